# bookstore/payments.py
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .auth import get_optional_user
from .config import Settings, get_settings
from .errors import ConfigurationError, NotFound, StoreError, ValidationFailed
from .models import User
from .payhere import (
    NotifyStatus,
    checkout_hash,
    format_amount,
    merchant_secret_digest,
    verify_notification,
)
from .schemas import HashRequest, OrderItemIn, OrderOut, VerifyPaymentRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])

NOTIFY_FIELDS = (
    "merchant_id", "order_id", "payment_id", "payhere_amount", "payhere_currency",
    "status_code", "md5sig", "custom_1", "custom_2",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _present(value) -> bool:
    return value is not None and str(value).strip() != ""


# 🔏 Checkout hash
@router.post("/generate-hash")
async def generate_hash(payload: HashRequest, settings: Settings = Depends(get_settings)):
    if not all(_present(v) for v in (payload.merchant_id, payload.order_id, payload.amount, payload.currency)):
        raise ValidationFailed("Missing required parameters")

    secret = settings.payhere_merchant_secret
    if not secret:
        logger.error("PAYHERE_MERCHANT_SECRET is not configured")
        raise ConfigurationError("Server configuration error - merchant secret not found")

    formatted_amount = format_amount(payload.amount)
    digest = checkout_hash(
        str(payload.merchant_id), payload.order_id, formatted_amount, payload.currency, secret
    )
    logger.info(
        "checkout hash generated",
        extra={"order_id": payload.order_id, "amount": formatted_amount, "currency": payload.currency},
    )

    body = {"success": True, "hash": digest}
    if settings.debug:
        body["debug"] = {
            "formatted_amount": formatted_amount,
            "merchant_secret_hash": merchant_secret_digest(secret)[:8] + "...",
        }
    return body


@router.get("/generate-hash")
async def generate_hash_info():
    return {
        "message": "PayHere hash generation endpoint",
        "timestamp": _now(),
        "method": "POST required with merchant_id, order_id, amount, currency",
    }


# 🔔 Gateway notification
async def _read_notification(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            body = await request.json()
        else:
            form = await request.form()
            body = {k: form.get(k) for k in form.keys()}
    except (ValueError, UnicodeDecodeError):
        raise ValidationFailed("Invalid notification data")
    if not isinstance(body, dict):
        raise ValidationFailed("Invalid notification data")
    return {k: body.get(k) for k in NOTIFY_FIELDS}


def _parse_custom(raw) -> Tuple[Optional[int], List[OrderItemIn]]:
    """userId and cart snapshot from custom_1; raises ValueError when malformed."""
    if not _present(raw):
        return None, []
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("custom_1 is not a JSON object")

    user_id = data.get("userId")
    items = []
    for entry in data.get("cartItems") or []:
        if not isinstance(entry, dict):
            raise ValueError("cart item is not an object")
        book_id = entry.get("bookId", entry.get("book_id", entry.get("id")))
        try:
            items.append(OrderItemIn(book_id=book_id, quantity=entry.get("quantity", 1)))
        except ValidationError as exc:
            raise ValueError(str(exc))
    return (int(user_id) if user_id is not None else None), items


def _ack(order_id, status: str, message: str, **extra) -> dict:
    data = {"orderId": order_id, "status": status, "timestamp": _now()}
    data.update(extra)
    return {"success": True, "message": message, "data": data}


@router.post("/payment-notify")
async def payment_notify(request: Request, settings: Settings = Depends(get_settings)):
    payload = await _read_notification(request)
    order_id = payload["order_id"]
    status_code = payload["status_code"]
    if not _present(order_id) or not _present(status_code):
        raise ValidationFailed("Invalid notification data")

    if settings.verify_notify_signature:
        if not settings.payhere_merchant_secret:
            raise ConfigurationError("Server configuration error - merchant secret not found")
        if not verify_notification(payload, settings.payhere_merchant_secret):
            logger.warning("notification signature mismatch", extra={"order_id": order_id})
            raise ValidationFailed("Invalid notification signature")

    status = NotifyStatus.from_code(status_code)
    logger.info(
        "payment notification received",
        extra={
            "order_id": order_id,
            "payment_id": payload["payment_id"],
            "status": status.value,
            "amount": payload["payhere_amount"],
            "currency": payload["payhere_currency"],
        },
    )

    if status is NotifyStatus.SUCCESS:
        # local bookkeeping failures are logged, never surfaced: a non-200 makes the gateway redeliver
        try:
            user_id, items = _parse_custom(payload["custom_1"])
            recorder = request.app.state.order_recorder
            await recorder.create_order(
                order_id=str(order_id),
                payment_id=payload["payment_id"],
                user_id=user_id,
                items=items,
                amount=Decimal(str(payload["payhere_amount"])) if _present(payload["payhere_amount"]) else None,
                currency=payload["payhere_currency"] or settings.checkout_currency,
            )
        except Exception:
            logger.exception("processing successful payment failed", extra={"order_id": order_id})
            return _ack(
                order_id, "received_with_errors",
                "Payment notification received but processing encountered issues",
                paymentId=payload["payment_id"], error="Internal processing error",
            )
        return _ack(
            order_id, "processed", "Payment notification processed successfully",
            paymentId=payload["payment_id"],
        )

    messages = {
        NotifyStatus.PENDING: "Payment pending notification received",
        NotifyStatus.CANCELLED: "Payment cancellation notification received",
        NotifyStatus.FAILED: "Payment failure notification received",
        NotifyStatus.CHARGEDBACK: "Payment chargeback notification received",
    }
    if status is NotifyStatus.UNKNOWN:
        return _ack(order_id, status.value, "Payment notification received with unknown status", statusCode=status_code)
    return _ack(order_id, status.value, messages[status])


@router.get("/payment-notify")
async def payment_notify_health(request: Request, settings: Settings = Depends(get_settings)):
    if request.query_params.get("test") == "true":
        return {
            "message": "PayHere notification endpoint is operational",
            "status": "healthy",
            "timestamp": _now(),
            "supportedMethods": ["POST", "GET"],
            "expectedPayload": {name: "string" for name in NOTIFY_FIELDS},
            "statusCodes": {"2": "Payment Success", "0": "Payment Pending", "-1": "Payment Cancelled",
                            "-2": "Payment Failed", "-3": "Payment Chargedback"},
        }
    return {
        "message": "PayHere notification endpoint is working",
        "status": "active",
        "timestamp": _now(),
        "environment": settings.environment,
    }


# ✅ Client-driven verification
async def _verify(order_id: Optional[str], request: Request, settings: Settings, user: Optional[User]) -> dict:
    if not _present(order_id):
        raise ValidationFailed("Order ID is required")
    if not settings.payhere_app_id or not settings.payhere_app_secret:
        raise ConfigurationError("Missing OAuth credentials (APP_ID and APP_SECRET required)")

    client = request.app.state.payhere_client_factory(settings)
    result = await client.verify(order_id)
    if not result.payment_data:
        raise NotFound("Failed to retrieve payment details or no payment data found")

    body = {
        "success": True,
        "status": result.http_status,
        "paymentStatus": result.payment_status,
        "isPaymentSuccessful": result.is_successful,
        "paymentData": result.payment_data,
        "order": None,
    }

    # only a captured payment may touch the cart; anything else leaves it as it was
    if result.is_successful and user is not None:
        data = result.payment_data
        try:
            amount = Decimal(str(data["amount"])) if _present(data.get("amount")) else None
            order = await request.app.state.order_recorder.create_order(
                order_id=order_id,
                payment_id=str(data.get("payment_id")) if data.get("payment_id") is not None else None,
                user_id=user.id,
                items=[],
                amount=amount,
                currency=data.get("currency") or settings.checkout_currency,
            )
            body["order"] = OrderOut.model_validate(order).model_dump(mode="json")
        except (StoreError, InvalidOperation, SQLAlchemyError) as exc:
            logger.error("order recording after verification failed", extra={"order_id": order_id, "error": str(exc)})
            body["orderError"] = exc.message if isinstance(exc, StoreError) else "Order could not be recorded"

    if settings.debug:
        body["debug"] = {"orderId": order_id, "actualPaymentStatus": result.payment_status, "data": result.raw}
    return body


@router.post("/verify-payment")
async def verify_payment(
    payload: VerifyPaymentRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    user: Optional[User] = Depends(get_optional_user),
):
    return await _verify(payload.order_id, request, settings, user)


@router.get("/verify-payment")
async def verify_payment_get(
    request: Request,
    order_id: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    user: Optional[User] = Depends(get_optional_user),
):
    return await _verify(order_id, request, settings, user)
