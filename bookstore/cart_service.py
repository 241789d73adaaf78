"""Cart reads and stock-checked cart writes.

Every write follows the same shape: cheap precondition checks that fail fast
with a user-facing message, then a single transaction that locks the book,
applies the change in SQL, and re-reads stock and holdings before committing.
Refusals are decided on those re-read numbers, so two writers never act on
the same stale quantity. The caller always gets the freshly re-read cart back.
"""
import logging
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .errors import NotFound, OutOfStock, StockChanged
from .models import Book, Cart, CartItem, User
from .schemas import CartItemOut, CartOut

logger = logging.getLogger(__name__)


async def load_cart(session: AsyncSession, user_id: int) -> Optional[Cart]:
    result = await session.execute(
        select(Cart)
        .options(selectinload(Cart.items).selectinload(CartItem.book))
        .where(Cart.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def serialize_cart(cart: Optional[Cart]) -> Optional[dict]:
    if cart is None:
        return None
    items = [CartItemOut.model_validate(it) for it in cart.items]
    total = sum((Decimal(it.book.price) * it.quantity for it in cart.items), Decimal("0.00"))
    out = CartOut(
        id=cart.id,
        user_id=cart.user_id,
        items=items,
        item_count=sum(it.quantity for it in cart.items),
        total=float(total),
    )
    return out.model_dump(mode="json")


async def _get_active_book(session: AsyncSession, book_id: int) -> Book:
    result = await session.execute(select(Book).where(Book.id == book_id))
    book = result.scalar_one_or_none()
    if book is None or not book.is_active:
        raise NotFound("Book not found or unavailable")
    return book


def _check_requested(stock: int, quantity: int) -> None:
    if stock < quantity:
        if stock == 0:
            raise OutOfStock("This book is out of stock")
        raise OutOfStock(f"Only {stock} items available in stock")


async def _lock_book(session: AsyncSession, book_id: int) -> None:
    # FOR UPDATE serializes concurrent writers on the same book (no-op on SQLite,
    # where the write lock taken by the cart statement does the same job)
    result = await session.execute(
        select(Book.is_active).where(Book.id == book_id).with_for_update()
    )
    if not result.scalar_one_or_none():
        raise StockChanged()


async def _holdings(session: AsyncSession, cart_id: int, book_id: int) -> Tuple[int, int, int]:
    """(stock, quantity in this cart, quantity across all carts) as seen inside the write."""
    stock = await session.execute(select(Book.stock).where(Book.id == book_id))
    own = await session.execute(
        select(CartItem.quantity).where(CartItem.cart_id == cart_id, CartItem.book_id == book_id)
    )
    total = await session.execute(
        select(func.coalesce(func.sum(CartItem.quantity), 0)).where(CartItem.book_id == book_id)
    )
    return stock.scalar_one(), own.scalar_one_or_none() or 0, total.scalar_one()


async def _refuse(session: AsyncSession, exc: Exception, cart_id: int, book_id: int) -> None:
    # rollback expires every loaded instance; only plain values are used past this point
    await session.rollback()
    if isinstance(exc, StockChanged):
        logger.info("stock changed during cart write", extra={"book_id": book_id, "cart_id": cart_id})
    raise exc


async def _get_or_create_cart(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(select(Cart.id).where(Cart.user_id == user_id))
    cart_id = result.scalar_one_or_none()
    if cart_id is not None:
        return cart_id
    cart = Cart(user_id=user_id)
    session.add(cart)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        raise StockChanged("Your cart was updated by another request. Please refresh and try again.")
    return cart.id


async def _require_cart(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(select(Cart.id).where(Cart.user_id == user_id))
    cart_id = result.scalar_one_or_none()
    if cart_id is None:
        raise NotFound("Cart not found")
    return cart_id


def _line(cart_id: int, book_id: int):
    return (CartItem.cart_id == cart_id, CartItem.book_id == book_id)


async def add_item(session: AsyncSession, user: User, book_id: int, quantity: int) -> Cart:
    user_id = user.id
    book = await _get_active_book(session, book_id)
    _check_requested(book.stock, quantity)

    cart_id = await _get_or_create_cart(session, user_id)
    try:
        await _lock_book(session, book_id)
        result = await session.execute(
            update(CartItem)
            .where(*_line(cart_id, book_id))
            .values(quantity=CartItem.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.add(CartItem(cart_id=cart_id, book_id=book_id, quantity=quantity))
            await session.flush()

        stock, own, total = await _holdings(session, cart_id, book_id)
        if own > stock:
            current = own - quantity
            available = stock - current
            if available <= 0:
                raise OutOfStock(f"You already have the maximum available quantity ({stock}) in your cart")
            raise OutOfStock(
                f"You can only add {available} more item(s). Current stock: {stock}, in cart: {current}"
            )
        if total > stock:
            raise StockChanged()
        await session.commit()
    except (OutOfStock, StockChanged) as exc:
        await _refuse(session, exc, cart_id, book_id)
    except IntegrityError:
        # a concurrent request created the same cart line first
        await _refuse(session, StockChanged(), cart_id, book_id)

    logger.info("cart item added", extra={"user_id": user_id, "book_id": book_id, "quantity": quantity})
    return await load_cart(session, user_id)


async def update_item(session: AsyncSession, user: User, book_id: int, quantity: int) -> Cart:
    user_id = user.id
    book = await _get_active_book(session, book_id)
    _check_requested(book.stock, quantity)

    cart_id = await _require_cart(session, user_id)
    try:
        await _lock_book(session, book_id)
        result = await session.execute(
            update(CartItem)
            .where(*_line(cart_id, book_id))
            .values(quantity=quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFound("Item not found in cart")

        stock, _, total = await _holdings(session, cart_id, book_id)
        _check_requested(stock, quantity)
        if total > stock:
            raise StockChanged()
        await session.commit()
    except (NotFound, OutOfStock, StockChanged) as exc:
        await _refuse(session, exc, cart_id, book_id)

    logger.info("cart item updated", extra={"user_id": user_id, "book_id": book_id, "quantity": quantity})
    return await load_cart(session, user_id)


async def remove_item(session: AsyncSession, user: User, book_id: int) -> Cart:
    user_id = user.id
    cart_id = await _require_cart(session, user_id)
    result = await session.execute(
        delete(CartItem).where(*_line(cart_id, book_id)).execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await _refuse(session, NotFound("Item not found in cart"), cart_id, book_id)
    await session.commit()
    logger.info("cart item removed", extra={"user_id": user_id, "book_id": book_id})
    return await load_cart(session, user_id)


async def clear_cart(session: AsyncSession, user_id: int) -> bool:
    """Delete the user's cart and its items. Returns False when there was none."""
    result = await session.execute(select(Cart.id).where(Cart.user_id == user_id))
    cart_id = result.scalar_one_or_none()
    if cart_id is None:
        return False
    await session.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
    await session.execute(delete(Cart).where(Cart.id == cart_id))
    await session.commit()
    return True
