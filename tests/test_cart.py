import asyncio

import pytest
from sqlalchemy import func, select

from bookstore.models import Book, CartItem


async def _cart(client, headers):
    r = await client.get("/api/cart", headers=headers)
    assert r.status_code == 200
    return r.json()["cart"]


async def test_cart_requires_auth(client):
    assert (await client.get("/api/cart")).status_code == 401


async def test_empty_cart_is_null(client, signup):
    headers, _ = await signup()
    assert await _cart(client, headers) is None


async def test_add_then_add_again_merges_line(client, signup, add_book):
    headers, _ = await signup()
    book_id = await add_book(price="10.00", stock=5)

    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 2})
    assert r.status_code == 200
    assert r.json()["message"] == "Added 2 item(s) to cart successfully"

    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id})
    cart = r.json()["cart"]
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 3
    assert cart["item_count"] == 3
    assert cart["total"] == 30.0


async def test_add_up_to_stock_then_maximum_message(client, signup, add_book):
    headers, _ = await signup()
    book_id = await add_book(stock=3)

    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 3})
    assert r.status_code == 200

    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 1})
    assert r.status_code == 400
    assert r.json()["detail"] == "You already have the maximum available quantity (3) in your cart"


async def test_add_more_than_remaining(client, signup, add_book):
    headers, _ = await signup()
    book_id = await add_book(stock=5)
    await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 3})

    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 3})
    assert r.status_code == 400
    assert r.json()["detail"] == "You can only add 2 more item(s). Current stock: 5, in cart: 3"
    cart = await _cart(client, headers)
    assert cart["items"][0]["quantity"] == 3


async def test_add_more_than_stock(client, signup, add_book):
    headers, _ = await signup()
    book_id = await add_book(stock=2)
    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 3})
    assert r.status_code == 400
    assert r.json()["detail"] == "Only 2 items available in stock"


async def test_add_out_of_stock(client, signup, add_book):
    headers, _ = await signup()
    book_id = await add_book(stock=0)
    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id})
    assert r.status_code == 400
    assert r.json()["detail"] == "This book is out of stock"


async def test_add_inactive_or_unknown_book(client, signup, add_book):
    headers, _ = await signup()
    hidden = await add_book(is_active=False)
    for book_id in (hidden, 9999):
        r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id})
        assert r.status_code == 404
        assert r.json()["detail"] == "Book not found or unavailable"


@pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True])
async def test_add_rejects_non_positive_or_non_integer_quantity(client, signup, add_book, quantity):
    headers, _ = await signup()
    book_id = await add_book()
    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": quantity})
    assert r.status_code == 400


async def test_update_sets_quantity(client, signup, add_book):
    headers, _ = await signup()
    book_id = await add_book(stock=5)
    await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 1})

    r = await client.put("/api/cart/update", headers=headers, json={"bookId": book_id, "quantity": 4})
    assert r.status_code == 200
    assert r.json()["cart"]["items"][0]["quantity"] == 4

    r = await client.put("/api/cart/update", headers=headers, json={"bookId": book_id, "quantity": 6})
    assert r.status_code == 400
    assert r.json()["detail"] == "Only 5 items available in stock"


async def test_update_without_cart_or_line(client, signup, add_book):
    headers, _ = await signup()
    first = await add_book(title="A")
    second = await add_book(title="B")

    r = await client.put("/api/cart/update", headers=headers, json={"bookId": first, "quantity": 1})
    assert r.status_code == 404
    assert r.json()["detail"] == "Cart not found"

    await client.post("/api/cart/add", headers=headers, json={"bookId": first})
    r = await client.put("/api/cart/update", headers=headers, json={"bookId": second, "quantity": 1})
    assert r.status_code == 404
    assert r.json()["detail"] == "Item not found in cart"


async def test_remove_line(client, signup, add_book):
    headers, _ = await signup()
    first = await add_book(title="A")
    second = await add_book(title="B")
    await client.post("/api/cart/add", headers=headers, json={"bookId": first})
    await client.post("/api/cart/add", headers=headers, json={"bookId": second})

    r = await client.request("DELETE", "/api/cart/update", headers=headers, json={"bookId": first})
    assert r.status_code == 200
    assert [it["book_id"] for it in r.json()["cart"]["items"]] == [second]

    r = await client.request("DELETE", "/api/cart/update", headers=headers, json={"bookId": first})
    assert r.status_code == 404


async def test_remove_line_of_deactivated_book(client, signup, add_book, app):
    headers, _ = await signup()
    book_id = await add_book()
    await client.post("/api/cart/add", headers=headers, json={"bookId": book_id})

    async with app.state.session_maker() as session:
        book = await session.get(Book, book_id)
        book.is_active = False
        await session.commit()

    r = await client.request("DELETE", "/api/cart/update", headers=headers, json={"bookId": book_id})
    assert r.status_code == 200
    assert r.json()["cart"]["items"] == []


async def test_clear_is_idempotent(client, signup, add_book):
    headers, _ = await signup()
    book_id = await add_book()
    await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 2})

    r = await client.delete("/api/cart/clear", headers=headers)
    assert r.json()["message"] == "Cart cleared successfully"
    r = await client.delete("/api/cart/clear", headers=headers)
    assert r.status_code == 200
    assert r.json()["message"] == "Cart is already empty"
    assert await _cart(client, headers) is None


async def test_carts_of_all_users_never_exceed_stock(client, signup, add_book):
    alice, _ = await signup(email="alice@bookshop.io")
    bob, _ = await signup(email="bob@bookshop.io")
    book_id = await add_book(stock=3)

    r = await client.post("/api/cart/add", headers=alice, json={"bookId": book_id, "quantity": 2})
    assert r.status_code == 200

    r = await client.post("/api/cart/add", headers=bob, json={"bookId": book_id, "quantity": 2})
    assert r.status_code == 409
    assert r.json()["detail"] == "Stock was updated by another user. Please refresh and try again."

    r = await client.post("/api/cart/add", headers=bob, json={"bookId": book_id, "quantity": 1})
    assert r.status_code == 200
    assert await _cart(client, alice) is not None
    assert (await _cart(client, bob))["item_count"] == 1


async def test_carts_are_per_user(client, signup, add_book):
    alice, _ = await signup(email="alice@bookshop.io")
    bob, _ = await signup(email="bob@bookshop.io")
    book_id = await add_book(stock=5)
    await client.post("/api/cart/add", headers=alice, json={"bookId": book_id})

    assert await _cart(client, bob) is None
    assert (await _cart(client, alice))["item_count"] == 1


async def test_add_two_twice_with_stock_three(client, signup, add_book):
    headers, _ = await signup()
    book_id = await add_book(stock=3)

    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 2})
    assert [(it["book_id"], it["quantity"]) for it in r.json()["cart"]["items"]] == [(book_id, 2)]

    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": 2})
    assert r.status_code == 400
    assert r.json()["detail"] == "You can only add 1 more item(s). Current stock: 3, in cart: 2"
    assert (await _cart(client, headers))["items"][0]["quantity"] == 2


async def test_add_then_remove_restores_items(client, signup, add_book):
    headers, _ = await signup()
    kept = await add_book(title="Kept")
    extra = await add_book(title="Extra")
    await client.post("/api/cart/add", headers=headers, json={"bookId": kept, "quantity": 2})
    before = [(it["book_id"], it["quantity"]) for it in (await _cart(client, headers))["items"]]

    await client.post("/api/cart/add", headers=headers, json={"bookId": extra})
    r = await client.request("DELETE", "/api/cart/update", headers=headers, json={"bookId": extra})
    after = [(it["book_id"], it["quantity"]) for it in r.json()["cart"]["items"]]
    assert after == before


async def test_stock_conflict_for_user_with_existing_cart(client, signup, add_book):
    alice, _ = await signup(email="alice@bookshop.io")
    bob, _ = await signup(email="bob@bookshop.io")
    contested = await add_book(title="Contested", stock=3)
    other = await add_book(title="Other", stock=3)
    await client.post("/api/cart/add", headers=bob, json={"bookId": other})
    await client.post("/api/cart/add", headers=alice, json={"bookId": contested, "quantity": 2})

    r = await client.post("/api/cart/add", headers=bob, json={"bookId": contested, "quantity": 2})
    assert r.status_code == 409
    assert r.json()["detail"] == "Stock was updated by another user. Please refresh and try again."
    assert [it["book_id"] for it in (await _cart(client, bob))["items"]] == [other]


async def _held(app, book_id):
    async with app.state.session_maker() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(CartItem.quantity), 0)).where(CartItem.book_id == book_id)
        )
        return result.scalar_one()


async def test_concurrent_adds_across_users_stay_within_stock(client, signup, add_book, app):
    shoppers = [(await signup(email=f"shopper{n}@bookshop.io"))[0] for n in range(4)]
    book_id = await add_book(stock=3)

    responses = await asyncio.gather(*[
        client.post("/api/cart/add", headers=h, json={"bookId": book_id, "quantity": 2}) for h in shoppers
    ])
    statuses = sorted(r.status_code for r in responses)
    assert statuses == [200, 409, 409, 409]
    assert await _held(app, book_id) == 2


async def test_concurrent_adds_by_one_user_all_count(client, signup, add_book, app):
    headers, _ = await signup()
    book_id = await add_book(stock=10)
    await client.post("/api/cart/add", headers=headers, json={"bookId": book_id})

    responses = await asyncio.gather(*[
        client.post("/api/cart/add", headers=headers, json={"bookId": book_id}) for _ in range(6)
    ])
    assert [r.status_code for r in responses] == [200] * 6
    assert (await _cart(client, headers))["items"][0]["quantity"] == 7
    assert await _held(app, book_id) == 7


async def test_concurrent_adds_by_one_user_stop_at_stock(client, signup, add_book, app):
    headers, _ = await signup()
    book_id = await add_book(stock=3)

    responses = await asyncio.gather(*[
        client.post("/api/cart/add", headers=headers, json={"bookId": book_id}) for _ in range(5)
    ])
    assert sum(r.status_code == 200 for r in responses) <= 3
    assert await _held(app, book_id) <= 3
