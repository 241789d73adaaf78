from pathlib import Path

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncSession

from .books import list_active_books
from .config import Settings, get_settings
from .database import get_session

BASE_DIR = Path(__file__).resolve().parent.parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
router = APIRouter(include_in_schema=False)

# payment-unsuccessful ?reason= values and what the shopper is told
REASONS = {
    "cancelled": "The payment was cancelled.",
    "failed": "The payment gateway declined the payment.",
    "payment_error": "The payment window reported an error.",
    "verification_error": "We could not confirm the payment with the gateway.",
}


@router.get("/", response_class=HTMLResponse)
async def catalog_page(
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    books = await list_active_books(session)
    return templates.TemplateResponse(
        request,
        "index.html",
        {"books": books, "merchant_id": settings.payhere_merchant_id, "sandbox": settings.payhere_sandbox},
    )


@router.get("/payment-success", response_class=HTMLResponse)
async def payment_success_page(request: Request, order_id: str = "", payment_id: str = ""):
    return templates.TemplateResponse(
        request, "payment_success.html", {"order_id": order_id, "payment_id": payment_id}
    )


@router.get("/payment-unsuccessful", response_class=HTMLResponse)
async def payment_unsuccessful_page(request: Request, order_id: str = "", reason: str = "failed", status: str = ""):
    return templates.TemplateResponse(
        request,
        "payment_unsuccessful.html",
        {
            "order_id": order_id,
            "reason": REASONS.get(reason, "The payment could not be completed."),
            "status": status,
        },
    )


@router.get("/payment-cancel", response_class=HTMLResponse)
async def payment_cancel_page(request: Request):
    return templates.TemplateResponse(request, "payment_cancel.html", {})
