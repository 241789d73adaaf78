from decimal import Decimal

import httpx
import pytest

from bookstore.config import Settings
from bookstore.database import create_tables
from bookstore.main import create_app
from bookstore.models import Book
from bookstore.payhere import PayHereClient

MERCHANT_ID = "1221149"
MERCHANT_SECRET = "MjY0NzM5OTY4NzE3OTU5MzE2ODMyNjI2MDMyMjEyMzg5NjM1MjU2"


class FakePayHere:
    """Stands in for the gateway's merchant API behind an httpx.MockTransport."""

    def __init__(self):
        self.token_status = 200
        self.search_status = 200
        self.payment_status = "RECEIVED"
        self.records = None
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        if request.url.path.endswith("/oauth/token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": "tok-123", "token_type": "bearer"})
        if request.url.path.endswith("/payment/search"):
            order_id = request.url.params.get("order_id")
            if self.records is not None:
                data = self.records
            else:
                data = [{
                    "payment_id": 320027150501,
                    "order_id": order_id,
                    "status": self.payment_status,
                    "currency": "LKR",
                    "amount": 1500.0,
                }]
            return httpx.Response(self.search_status, json={"status": 1, "msg": "Payments found", "data": data})
        return httpx.Response(404)

    def factory(self, settings):
        return PayHereClient(
            settings.payhere_app_id,
            settings.payhere_app_secret,
            settings.payhere_base_url,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'bookstore.db'}",
        environment="test",
        log_level="WARNING",
        jwt_secret="test-jwt-secret",
        payhere_merchant_id=MERCHANT_ID,
        payhere_merchant_secret=MERCHANT_SECRET,
        payhere_app_id="app-id",
        payhere_app_secret="app-secret",
    )


@pytest.fixture
def payhere():
    return FakePayHere()


@pytest.fixture
async def app(settings, payhere):
    app = create_app(settings, payhere_client_factory=payhere.factory)
    await create_tables(app.state.engine)
    yield app
    await app.state.engine.dispose()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def add_book(app):
    async def _add(title="Dune", price="10.00", stock=5, is_active=True, author="Frank Herbert"):
        async with app.state.session_maker() as session:
            book = Book(title=title, author=author, price=Decimal(price), stock=stock, is_active=is_active)
            session.add(book)
            await session.commit()
            return book.id
    return _add


@pytest.fixture
def get_book(app):
    async def _get(book_id):
        async with app.state.session_maker() as session:
            return await session.get(Book, book_id)
    return _get


@pytest.fixture
def signup(client):
    async def _signup(email="reader@bookshop.io", password="secret123", name="Ada Reader"):
        r = await client.post("/api/auth/signup", json={"email": email, "password": password, "name": name})
        assert r.status_code == 200, r.text
        data = r.json()
        return {"Authorization": f"Bearer {data['token']}"}, data["user"]
    return _signup
