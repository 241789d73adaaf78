"""HTTP client for the storefront API.

Holds what a browser session would: the bearer token (behind `TokenStore`),
the cart lines with their optimistic-update state, a queue of user-facing
notifications, and the checkout state of the current order.
"""
import asyncio
import json
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)

RECEIVED = "RECEIVED"
_ORDER_ALPHABET = string.ascii_lowercase + string.digits


class ClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SessionExpired(ClientError):
    pass


class InvalidTransition(Exception):
    pass


# 🔑 Token storage
class TokenStore(Protocol):
    def get(self) -> Optional[str]: ...

    def set(self, token: str, expires_at: Optional[float] = None) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._clock = clock

    def get(self) -> Optional[str]:
        if self._token and self._expires_at is not None and self._clock() >= self._expires_at:
            self.clear()
        return self._token

    def set(self, token: str, expires_at: Optional[float] = None) -> None:
        self._token = token
        self._expires_at = expires_at

    def clear(self) -> None:
        self._token = None
        self._expires_at = None


# 🔔 Notifications
@dataclass
class Notification:
    kind: str  # success / info / warning / error
    message: str


class NotificationQueue:
    """Pending messages for the view layer to render and then drain."""

    def __init__(self):
        self._items: List[Notification] = []

    def push(self, message: str, kind: str = "success", replace: bool = True) -> None:
        # one toast at a time unless told otherwise
        if replace:
            self._items.clear()
        self._items.append(Notification(kind=kind, message=message))

    def drain(self) -> List[Notification]:
        items, self._items = self._items, []
        return items

    @property
    def pending(self) -> List[Notification]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


# 🛒 Cart lines
class LineState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class CartLine:
    book_id: int
    title: str
    author: str
    price: float
    quantity: int
    stock: int
    cover_image_url: Optional[str] = None
    state: LineState = LineState.IDLE
    _previous: Optional[int] = field(default=None, repr=False)

    @classmethod
    def from_api(cls, item: dict) -> "CartLine":
        book = item["book"]
        return cls(
            book_id=book["id"],
            title=book["title"],
            author=book["author"],
            price=float(book["price"]),
            quantity=item["quantity"],
            stock=book["stock"],
            cover_image_url=book.get("cover_image_url"),
        )

    def begin(self, quantity: int) -> None:
        if self.state is LineState.PENDING:
            raise InvalidTransition(f"book {self.book_id} already has a change in flight")
        self._previous = self.quantity
        self.quantity = quantity
        self.state = LineState.PENDING

    def commit(self, quantity: Optional[int] = None) -> None:
        if self.state is not LineState.PENDING:
            raise InvalidTransition(f"cannot commit book {self.book_id} from {self.state.value}")
        if quantity is not None:
            self.quantity = quantity
        self._previous = None
        self.state = LineState.COMMITTED

    def rollback(self) -> None:
        if self.state is not LineState.PENDING:
            raise InvalidTransition(f"cannot roll back book {self.book_id} from {self.state.value}")
        self.quantity = self._previous
        self._previous = None
        self.state = LineState.ROLLED_BACK


# 💳 Checkout
class CheckoutState(str, Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"
    DISMISSED = "dismissed"
    ERROR = "error"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    UNSUCCESSFUL = "unsuccessful"


_CHECKOUT_TRANSITIONS = {
    CheckoutState.INITIATED: {CheckoutState.COMPLETED, CheckoutState.DISMISSED, CheckoutState.ERROR},
    CheckoutState.COMPLETED: {CheckoutState.VERIFYING},
    CheckoutState.VERIFYING: {CheckoutState.SUCCEEDED, CheckoutState.UNSUCCESSFUL},
}


@dataclass
class CheckoutSession:
    order_id: str
    amount: str
    currency: str
    payment: dict
    state: CheckoutState = CheckoutState.INITIATED
    payment_status: Optional[str] = None
    payment_id: Optional[str] = None
    reason: Optional[str] = None

    def advance(self, new_state: CheckoutState) -> None:
        if new_state not in _CHECKOUT_TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(f"checkout {self.order_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def redirect_path(self) -> Optional[str]:
        if self.state is CheckoutState.SUCCEEDED:
            return "/payment-success?" + urlencode({"order_id": self.order_id, "payment_id": self.payment_id or "unknown"})
        if self.state in (CheckoutState.UNSUCCESSFUL, CheckoutState.ERROR):
            params = {"order_id": self.order_id, "reason": self.reason or "failed"}
            if self.payment_status:
                params["status"] = self.payment_status
            return "/payment-unsuccessful?" + urlencode(params)
        return None


def generate_order_id(now_ms: Optional[int] = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_ORDER_ALPHABET) for _ in range(9))
    return f"ORDER_{now_ms}_{suffix}"


class StorefrontClient:
    def __init__(
        self,
        base_url: str,
        token_store: Optional[TokenStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_backoff: float = 1.0,
        verify_delay: float = 3.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        notifications: Optional[NotificationQueue] = None,
    ):
        self.tokens = token_store or MemoryTokenStore()
        self.notifications = notifications or NotificationQueue()
        self.lines: Dict[int, CartLine] = {}
        self.user: Optional[dict] = None
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=15.0)
        self._backoff = retry_backoff
        self._verify_delay = verify_delay
        self._sleep = sleep

    async def __aenter__(self) -> "StorefrontClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, url: str, json: Optional[dict] = None,
                       require_auth: bool = True, retry_count: int = 0) -> dict:
        token = self.tokens.get()
        if require_auth and not token:
            raise ClientError("Authentication required. Please log in.", 401)
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        try:
            resp = await self._http.request(method, url, json=json, headers=headers)
        except httpx.TransportError as exc:
            if retry_count < 1:
                await self._sleep(self._backoff)
                return await self._request(method, url, json, require_auth, retry_count + 1)
            raise ClientError(f"Network error: {exc}")

        if resp.status_code == 401 and require_auth:
            self.tokens.clear()
            self.user = None
            raise SessionExpired("Session expired. Please log in again.", 401)

        if resp.status_code == 429 and retry_count < 2:
            await self._sleep(self._backoff * (retry_count + 1))
            return await self._request(method, url, json, require_auth, retry_count + 1)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.is_error:
            message = data.get("detail") if isinstance(data, dict) else None
            raise ClientError(message or f"Request failed with status {resp.status_code}", resp.status_code)
        return data

    def _set_lines(self, cart: Optional[dict]) -> None:
        self.lines = {}
        for item in (cart or {}).get("items", []):
            line = CartLine.from_api(item)
            self.lines[line.book_id] = line

    @property
    def cart_total(self) -> float:
        return sum(line.price * line.quantity for line in self.lines.values())

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines.values())

    # 👤 Session
    async def signup(self, email: str, password: str, name: str) -> dict:
        data = await self._request(
            "POST", "/api/auth/signup", {"email": email, "password": password, "name": name}, require_auth=False
        )
        self.tokens.set(data["token"])
        self.user = data["user"]
        return data["user"]

    async def login(self, email: str, password: str) -> dict:
        data = await self._request("POST", "/api/auth/login", {"email": email, "password": password}, require_auth=False)
        self.tokens.set(data["token"])
        self.user = data["user"]
        return data["user"]

    def logout(self) -> None:
        self.tokens.clear()
        self.user = None
        self.lines = {}

    async def me(self) -> dict:
        self.user = await self._request("GET", "/api/auth/me")
        return self.user

    async def list_books(self) -> List[dict]:
        data = await self._request("GET", "/api/books", require_auth=False)
        return data.get("books", [])

    # 🛒 Cart
    async def load_cart(self) -> Dict[int, CartLine]:
        try:
            data = await self._request("GET", "/api/cart")
        except ClientError as exc:
            self.lines = {}
            self.notifications.push(
                exc.message if exc.status_code == 401 else "Failed to load cart. Please try again.",
                "warning" if exc.status_code == 401 else "error",
            )
            raise
        self._set_lines(data.get("cart"))
        return self.lines

    async def add_to_cart(self, book_id: int, quantity: int = 1, stock: Optional[int] = None) -> bool:
        if stock is not None and quantity > stock:
            self.notifications.push(f"Only {stock} items available in stock", "warning")
            return False
        try:
            data = await self._request("POST", "/api/cart/add", {"bookId": book_id, "quantity": quantity})
        except ClientError as exc:
            self.notifications.push(exc.message or "Failed to add item to cart", "error")
            return False
        self._set_lines(data.get("cart"))
        self.notifications.push(data.get("message") or "Item added to cart successfully!")
        return True

    async def update_quantity(self, book_id: int, quantity: int) -> bool:
        if quantity < 1:
            return await self.remove_from_cart(book_id)
        line = self.lines.get(book_id)
        if line is None:
            self.notifications.push("Item not found in cart", "error")
            return False
        if quantity > line.stock:
            self.notifications.push(f"Only {line.stock} items available in stock", "warning")
            return False

        line.begin(quantity)
        try:
            data = await self._request("PUT", "/api/cart/update", {"bookId": book_id, "quantity": quantity})
        except ClientError as exc:
            line.rollback()
            self.notifications.push(exc.message or "Failed to update quantity", "error")
            return False

        line.commit()
        self._set_lines(data.get("cart"))
        if book_id in self.lines:
            self.lines[book_id].state = LineState.COMMITTED
        return True

    async def remove_from_cart(self, book_id: int) -> bool:
        line = self.lines.get(book_id)
        if line is None:
            self.notifications.push("Item not found in cart", "error")
            return False

        line.begin(0)
        try:
            data = await self._request("DELETE", "/api/cart/update", {"bookId": book_id})
        except ClientError as exc:
            line.rollback()
            self.notifications.push(exc.message or "Failed to remove item", "error")
            return False

        line.commit()
        self._set_lines(data.get("cart"))
        self.notifications.push(data.get("message") or "Item removed from cart")
        return True

    async def clear_cart(self) -> bool:
        try:
            data = await self._request("DELETE", "/api/cart/clear")
        except ClientError as exc:
            self.notifications.push(exc.message or "Failed to clear cart", "error")
            return False
        self.lines = {}
        self.notifications.push(data.get("message") or "Cart cleared successfully")
        return True

    # 💳 Checkout
    async def begin_checkout(
        self,
        merchant_id: str,
        origin: str,
        currency: str = "LKR",
        exchange_rate: int = 300,
        sandbox: bool = True,
    ) -> CheckoutSession:
        if self.user is None:
            raise ClientError("Please log in to proceed", 401)
        if not self.lines:
            raise ClientError("Your cart is empty", 400)

        order_id = generate_order_id()
        amount = (Decimal(str(self.cart_total)) * exchange_rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        data = await self._request(
            "POST", "/api/generate-hash",
            {"merchant_id": merchant_id, "order_id": order_id, "amount": str(amount), "currency": currency},
        )

        email = self.user.get("email") or ""
        name = self.user.get("name") or email.split("@")[0]
        first, _, last = name.partition(" ")
        count = len(self.lines)
        payment = {
            "sandbox": sandbox,
            "merchant_id": merchant_id,
            "return_url": f"{origin}/payment-success",
            "cancel_url": f"{origin}/payment-cancel",
            "notify_url": f"{origin}/api/payment-notify",
            "order_id": order_id,
            "items": f"Books ({count} {'item' if count == 1 else 'items'})",
            "amount": f"{amount:.2f}",
            "currency": currency,
            "hash": data["hash"],
            "first_name": first,
            "last_name": last,
            "email": email,
            "custom_1": json.dumps({
                "userId": self.user.get("id"),
                "cartItems": [{"bookId": ln.book_id, "quantity": ln.quantity} for ln in self.lines.values()],
            }),
        }
        logger.info("checkout started", extra={"order_id": order_id, "amount": str(amount)})
        self.notifications.push("Redirecting to PayHere...", "info")
        return CheckoutSession(order_id=order_id, amount=f"{amount:.2f}", currency=currency, payment=payment)

    def dismiss_checkout(self, checkout: CheckoutSession) -> None:
        checkout.advance(CheckoutState.DISMISSED)
        self.notifications.push("Payment cancelled", "warning")

    def fail_checkout(self, checkout: CheckoutSession) -> None:
        checkout.advance(CheckoutState.ERROR)
        checkout.reason = "payment_error"
        self.notifications.push("Payment failed", "error")

    async def complete_checkout(self, checkout: CheckoutSession) -> CheckoutSession:
        """Gateway reported completion: wait, verify with the server, settle the cart."""
        checkout.advance(CheckoutState.COMPLETED)
        self.notifications.push("Payment completed. Verifying...", "info")
        await self._sleep(self._verify_delay)

        checkout.advance(CheckoutState.VERIFYING)
        try:
            result = await self._request(
                "POST", "/api/verify-payment", {"order_id": checkout.order_id}, require_auth=False
            )
        except ClientError as exc:
            logger.warning("payment verification failed", extra={"order_id": checkout.order_id, "error": exc.message})
            checkout.reason = "verification_error"
            checkout.advance(CheckoutState.UNSUCCESSFUL)
            self.notifications.push("Payment verification failed", "error")
            return checkout

        checkout.payment_status = result.get("paymentStatus") or "unknown"
        if result.get("isPaymentSuccessful") and checkout.payment_status == RECEIVED:
            checkout.payment_id = str((result.get("paymentData") or {}).get("payment_id") or "unknown")
            checkout.advance(CheckoutState.SUCCEEDED)
            await self.clear_cart()
            self.notifications.push("Payment successful!", "success")
        else:
            checkout.reason = "cancelled" if checkout.payment_status == "CANCELED" else "failed"
            checkout.advance(CheckoutState.UNSUCCESSFUL)
            self.notifications.push("Payment was not successful", "error")
        return checkout
