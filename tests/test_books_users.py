async def test_list_books_only_active(client, add_book):
    await add_book(title="Dune", price="12.50", stock=3)
    await add_book(title="Hidden", stock=3, is_active=False)

    r = await client.get("/api/books")
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 1
    assert data["books"][0]["title"] == "Dune"
    assert data["books"][0]["price"] == 12.5


async def test_get_book(client, add_book):
    book_id = await add_book(title="Emma", author="Jane Austen")
    r = await client.get(f"/api/books/{book_id}")
    assert r.status_code == 200
    assert r.json()["author"] == "Jane Austen"


async def test_get_inactive_or_missing_book(client, add_book):
    hidden = await add_book(is_active=False)
    assert (await client.get(f"/api/books/{hidden}")).status_code == 404
    assert (await client.get("/api/books/9999")).status_code == 404


async def test_users_listing_hides_password(client, signup):
    await signup()
    r = await client.get("/api/users")
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 1
    user = data["users"][0]
    assert user["email"] == "reader@bookshop.io"
    assert "password_hash" not in user
    assert user["addresses"] == []
    assert user["orders"] == []


async def test_create_user_endpoint(client):
    r = await client.post(
        "/api/users",
        json={"email": "new@bookshop.io", "password": "secret123", "name": "New Reader", "firstName": "New"},
    )
    assert r.status_code == 201
    assert r.json()["user"]["first_name"] == "New"


async def test_catalog_page_renders_books(client, add_book):
    await add_book(title="Middlemarch")
    r = await client.get("/")
    assert r.status_code == 200
    assert "Middlemarch" in r.text


async def test_payment_unsuccessful_page_maps_reason(client):
    r = await client.get("/payment-unsuccessful", params={"order_id": "ORDER_1", "reason": "cancelled"})
    assert r.status_code == 200
    assert "The payment was cancelled." in r.text
    assert "ORDER_1" in r.text
