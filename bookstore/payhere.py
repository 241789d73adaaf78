"""PayHere gateway helpers: request signing, notification signatures and the
merchant API (OAuth client-credentials + payment search).

The signing scheme is fixed by the gateway; any change in field order, case or
amount formatting makes the gateway reject the payment.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Optional, Union

import httpx

from .errors import GatewayError, ValidationFailed

logger = logging.getLogger(__name__)

TOKEN_PATH = "/merchant/v1/oauth/token"
SEARCH_PATH = "/merchant/v1/payment/search"

# payment search record status that means the money was captured
RECEIVED = "RECEIVED"

Amount = Union[int, float, str, Decimal]


class NotifyStatus(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    CANCELLED = "cancelled"
    FAILED = "failed"
    CHARGEDBACK = "chargedback"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: Any) -> "NotifyStatus":
        return _STATUS_CODES.get(str(code).strip(), cls.UNKNOWN)


_STATUS_CODES = {
    "2": NotifyStatus.SUCCESS,
    "0": NotifyStatus.PENDING,
    "-1": NotifyStatus.CANCELLED,
    "-2": NotifyStatus.FAILED,
    "-3": NotifyStatus.CHARGEDBACK,
}


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def format_amount(amount: Amount) -> str:
    """Two-decimal string, rounded half-up; rejects non-numbers and amounts <= 0."""
    if isinstance(amount, bool):
        raise ValidationFailed("Invalid amount provided")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationFailed("Invalid amount provided")
    if not value.is_finite():
        raise ValidationFailed("Invalid amount provided")
    value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if value <= 0:
        raise ValidationFailed("Invalid amount provided")
    return f"{value:.2f}"


def merchant_secret_digest(merchant_secret: str) -> str:
    return _md5_upper(merchant_secret)


def checkout_hash(merchant_id: str, order_id: str, amount: Amount, currency: str, merchant_secret: str) -> str:
    """Hash the browser sends with a payment request so the gateway can check its origin."""
    formatted = format_amount(amount)
    return _md5_upper(
        f"{merchant_id}{order_id}{formatted}{currency}{merchant_secret_digest(merchant_secret)}"
    )


def notification_signature(
    merchant_id: str,
    order_id: str,
    payhere_amount: str,
    payhere_currency: str,
    status_code: str,
    merchant_secret: str,
) -> str:
    # amount is taken verbatim from the notification, the gateway already formats it
    return _md5_upper(
        f"{merchant_id}{order_id}{payhere_amount}{payhere_currency}{status_code}"
        f"{merchant_secret_digest(merchant_secret)}"
    )


def verify_notification(payload: dict, merchant_secret: str) -> bool:
    received = str(payload.get("md5sig") or "").upper()
    if not received:
        return False
    expected = notification_signature(
        str(payload.get("merchant_id") or ""),
        str(payload.get("order_id") or ""),
        str(payload.get("payhere_amount") or ""),
        str(payload.get("payhere_currency") or ""),
        str(payload.get("status_code") or ""),
        merchant_secret,
    )
    return hmac.compare_digest(received, expected)


@dataclass
class VerificationResult:
    order_id: str
    payment_status: str
    payment_data: dict
    raw: dict = field(default_factory=dict)
    http_status: int = 200

    @property
    def is_successful(self) -> bool:
        return self.payment_status == RECEIVED


class PayHereClient:
    """Merchant API client. One attempt per call; failures surface as GatewayError."""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self._transport, timeout=self._timeout)

    async def get_access_token(self, client: httpx.AsyncClient) -> str:
        resp = await client.post(
            TOKEN_PATH,
            data={"grant_type": "client_credentials"},
            auth=(self.app_id, self.app_secret),
            headers={"Accept": "application/json"},
        )
        if resp.status_code // 100 != 2:
            logger.warning("payhere token request failed", extra={"status": resp.status_code})
            raise GatewayError("Failed to get access token", upstream_status=resp.status_code, details=resp.text)

        try:
            body = resp.json()
        except ValueError:
            body = {"raw": resp.text}
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise GatewayError("No access token received", upstream_status=resp.status_code, details=body)
        return token

    async def search_payment(self, client: httpx.AsyncClient, token: str, order_id: str) -> httpx.Response:
        return await client.get(
            SEARCH_PATH,
            params={"order_id": order_id},
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )

    async def verify(self, order_id: str) -> VerificationResult:
        try:
            async with self._client() as client:
                token = await self.get_access_token(client)
                resp = await self.search_payment(client, token, order_id)
        except httpx.HTTPError as exc:
            logger.error("payhere unreachable", extra={"order_id": order_id, "error": str(exc)})
            raise GatewayError("Payment gateway unreachable", details=str(exc))

        try:
            body = resp.json()
        except ValueError:
            body = {"raw": resp.text}

        if resp.status_code // 100 != 2:
            raise GatewayError(
                "Failed to retrieve payment details", upstream_status=resp.status_code, details=body
            )

        records = body.get("data") if isinstance(body, dict) else None
        if not records:
            return VerificationResult(order_id=order_id, payment_status="", payment_data={}, raw=body, http_status=resp.status_code)

        first = records[0] if isinstance(records[0], dict) else {}
        status = str(first.get("status") or "")
        logger.info("payhere payment status", extra={"order_id": order_id, "payment_status": status})
        return VerificationResult(
            order_id=order_id,
            payment_status=status,
            payment_data=first,
            raw=body,
            http_status=resp.status_code,
        )


ClientFactory = Callable[[Any], PayHereClient]


def default_client_factory(settings) -> PayHereClient:
    return PayHereClient(settings.payhere_app_id, settings.payhere_app_secret, settings.payhere_base_url)
