import json

from bookstore.payhere import notification_signature

from .conftest import MERCHANT_ID, MERCHANT_SECRET


def signed(order_id, status_code="2", amount="1500.00", currency="LKR", **extra):
    payload = {
        "merchant_id": MERCHANT_ID,
        "order_id": order_id,
        "payment_id": "320027150501",
        "payhere_amount": amount,
        "payhere_currency": currency,
        "status_code": status_code,
    }
    payload["md5sig"] = notification_signature(
        MERCHANT_ID, order_id, amount, currency, status_code, MERCHANT_SECRET
    )
    payload.update(extra)
    return payload


async def _fill_cart(client, signup, add_book, quantity=2, stock=5):
    headers, user = await signup()
    book_id = await add_book(price="5.00", stock=stock)
    r = await client.post("/api/cart/add", headers=headers, json={"bookId": book_id, "quantity": quantity})
    assert r.status_code == 200
    return headers, user, book_id


async def test_successful_notification_records_order(client, signup, add_book, get_book):
    headers, user, book_id = await _fill_cart(client, signup, add_book)
    custom = json.dumps({"userId": user["id"], "cartItems": [{"bookId": book_id, "quantity": 2}]})

    r = await client.post("/api/payment-notify", data=signed("ORDER_1_aaaaaaaaa", custom_1=custom))
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"]["status"] == "processed"
    assert body["data"]["orderId"] == "ORDER_1_aaaaaaaaa"

    assert (await get_book(book_id)).stock == 3
    cart = (await client.get("/api/cart", headers=headers)).json()["cart"]
    assert cart is None

    orders = (await client.get("/api/orders", headers=headers)).json()["orders"]
    assert len(orders) == 1
    assert orders[0]["order_id"] == "ORDER_1_aaaaaaaaa"
    assert orders[0]["total"] == 1500.0
    assert orders[0]["items_count"] == 1


async def test_redelivered_notification_records_once(client, signup, add_book, get_book):
    headers, user, book_id = await _fill_cart(client, signup, add_book)
    custom = json.dumps({"userId": user["id"], "cartItems": [{"book_id": book_id, "quantity": 2}]})
    payload = signed("ORDER_2_bbbbbbbbb", custom_1=custom)

    for _ in range(2):
        r = await client.post("/api/payment-notify", data=payload)
        assert r.json()["data"]["status"] == "processed"

    assert (await get_book(book_id)).stock == 3
    orders = (await client.get("/api/orders", headers=headers)).json()["orders"]
    assert len(orders) == 1


async def test_json_notification_body_is_accepted(client, signup, add_book):
    _, user, book_id = await _fill_cart(client, signup, add_book)
    custom = json.dumps({"userId": user["id"], "cartItems": [{"id": book_id, "quantity": 1}]})
    r = await client.post("/api/payment-notify", json=signed("ORDER_3_ccccccccc", custom_1=custom))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "processed"


async def test_malformed_custom_field_is_still_acknowledged(client):
    r = await client.post("/api/payment-notify", data=signed("ORDER_4_ddddddddd", custom_1="{not json"))
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"]["status"] == "received_with_errors"


async def test_out_of_stock_at_fulfilment_is_acknowledged(client, signup, add_book, get_book):
    _, user, book_id = await _fill_cart(client, signup, add_book, quantity=2, stock=2)
    custom = json.dumps({"userId": user["id"], "cartItems": [{"bookId": book_id, "quantity": 3}]})
    r = await client.post("/api/payment-notify", data=signed("ORDER_5_eeeeeeeee", custom_1=custom))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "received_with_errors"
    assert (await get_book(book_id)).stock == 2


async def test_bad_signature_is_rejected(client):
    payload = signed("ORDER_6_fffffffff")
    payload["md5sig"] = "0" * 32
    r = await client.post("/api/payment-notify", data=payload)
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid notification signature"


async def test_signature_check_can_be_disabled(client, app):
    app.state.settings.verify_notify_signature = False
    payload = signed("ORDER_7_ggggggggg", status_code="-1")
    payload["md5sig"] = "bogus"
    r = await client.post("/api/payment-notify", data=payload)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "cancelled"


async def test_missing_fields_or_unparseable_body(client):
    r = await client.post("/api/payment-notify", data={"merchant_id": MERCHANT_ID})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid notification data"

    r = await client.post(
        "/api/payment-notify", content=b"{oops", headers={"content-type": "application/json"}
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid notification data"


async def test_non_success_statuses_are_acknowledged(client):
    expected = {"0": "pending", "-1": "cancelled", "-2": "failed", "-3": "chargedback", "9": "unknown"}
    for code, status in expected.items():
        r = await client.post("/api/payment-notify", data=signed(f"ORDER_S{code}", status_code=code))
        assert r.status_code == 200
        assert r.json()["data"]["status"] == status

    unknown = await client.post("/api/payment-notify", data=signed("ORDER_X", status_code="9"))
    assert unknown.json()["data"]["statusCode"] == "9"


async def test_health_probe(client):
    r = await client.get("/api/payment-notify")
    assert r.status_code == 200
    assert r.json()["status"] == "active"

    r = await client.get("/api/payment-notify", params={"test": "true"})
    assert r.json()["status"] == "healthy"
    assert "md5sig" in r.json()["expectedPayload"]


class FailingRecorder:
    def __init__(self):
        self.calls = 0

    async def create_order(self, **kwargs):
        self.calls += 1
        raise RuntimeError("recorder exploded")


async def test_unexpected_recorder_failure_is_still_acknowledged(client, app):
    recorder = FailingRecorder()
    app.state.order_recorder = recorder
    custom = json.dumps({"userId": None, "cartItems": [{"bookId": 1, "quantity": 1}]})

    r = await client.post("/api/payment-notify", data=signed("ORDER_8_hhhhhhhhh", custom_1=custom))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "received_with_errors"
    assert recorder.calls == 1
