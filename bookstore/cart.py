# bookstore/cart.py
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from . import cart_service
from .auth import get_current_user
from .database import get_session
from .models import User
from .schemas import CartAddRequest, CartRemoveRequest, CartUpdateRequest

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("")
async def get_cart(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    cart = await cart_service.load_cart(session, current_user.id)
    return {"success": True, "cart": cart_service.serialize_cart(cart)}


@router.post("/add")
async def add_to_cart(
    payload: CartAddRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    cart = await cart_service.add_item(session, current_user, payload.book_id, payload.quantity)
    return {
        "success": True,
        "cart": cart_service.serialize_cart(cart),
        "message": f"Added {payload.quantity} item(s) to cart successfully",
    }


@router.put("/update")
async def update_cart_item(
    payload: CartUpdateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    cart = await cart_service.update_item(session, current_user, payload.book_id, payload.quantity)
    return {
        "success": True,
        "cart": cart_service.serialize_cart(cart),
        "message": "Cart updated successfully",
    }


@router.delete("/update")
async def remove_cart_item(
    payload: CartRemoveRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    cart = await cart_service.remove_item(session, current_user, payload.book_id)
    return {
        "success": True,
        "cart": cart_service.serialize_cart(cart),
        "message": "Item removed from cart successfully",
    }


@router.delete("/clear")
async def clear_cart(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    cleared = await cart_service.clear_cart(session, current_user.id)
    if not cleared:
        return {"success": True, "message": "Cart is already empty"}
    return {"success": True, "message": "Cart cleared successfully"}
