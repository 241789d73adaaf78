# bookstore/orders.py
import logging
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence

from fastapi import APIRouter, Depends
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload, sessionmaker

from .auth import get_current_user
from .database import get_session
from .errors import Conflict, OutOfStock, ValidationFailed
from .models import Book, Cart, CartItem, Order, OrderItem, User
from .schemas import OrderItemIn, OrderOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


class OrderRecorder(Protocol):
    """Turns a confirmed gateway payment into a stored order."""

    async def create_order(
        self,
        order_id: str,
        payment_id: Optional[str],
        user_id: Optional[int],
        items: Sequence[OrderItemIn],
        amount: Optional[Decimal],
        currency: str,
    ) -> Order: ...


class SqlOrderRecorder:
    """Records an order once per gateway order id.

    Both the notification webhook and the client-driven verification call this;
    whichever arrives first creates the order and the other gets it back.
    Items default to the user's cart when the caller has no snapshot. Stock is
    decremented and the user's cart cleared in the same transaction.
    """

    def __init__(self, session_maker: sessionmaker):
        self._session_maker = session_maker

    async def create_order(self, order_id, payment_id, user_id, items, amount, currency):
        async with self._session_maker() as session:
            existing = await self._find(session, order_id)
            if existing is not None:
                logger.info("order already recorded", extra={"order_id": order_id})
                return existing

            lines = list(items)
            if not lines and user_id is not None:
                lines = await self._cart_lines(session, user_id)
            if not lines:
                raise ValidationFailed("Order has no items")

            order = Order(
                order_id=order_id,
                payment_id=payment_id,
                user_id=user_id,
                status="completed",
                total=Decimal("0.00"),
                currency=currency,
                items=[],
            )
            computed = Decimal("0.00")
            session.add(order)

            # lock in id order so two fulfilments touching the same books cannot deadlock
            for line in sorted(lines, key=lambda ln: ln.book_id):
                res = await session.execute(select(Book).where(Book.id == line.book_id).with_for_update())
                book = res.scalar_one_or_none()
                if book is None:
                    await session.rollback()
                    raise ValidationFailed(f"Book ID {line.book_id} not found")
                if book.stock < line.quantity:
                    title = book.title
                    await session.rollback()
                    raise OutOfStock(f"Not enough stock for: {title}")
                book.stock = book.stock - line.quantity
                computed += Decimal(book.price) * line.quantity
                order.items.append(OrderItem(book_id=book.id, quantity=line.quantity, price=book.price))

            order.total = (Decimal(str(amount)) if amount is not None else computed).quantize(Decimal("0.01"))

            if user_id is not None:
                cart_ids = select(Cart.id).where(Cart.user_id == user_id).scalar_subquery()
                await session.execute(delete(CartItem).where(CartItem.cart_id == cart_ids))
                await session.execute(delete(Cart).where(Cart.user_id == user_id))

            try:
                await session.commit()
            except IntegrityError:
                # the other confirmation path recorded it between our read and commit
                await session.rollback()
                existing = await self._find(session, order_id)
                if existing is None:
                    raise Conflict("Order could not be recorded")
                return existing

            logger.info(
                "order recorded",
                extra={"order_id": order_id, "user_id": user_id, "lines": len(lines), "total": str(order.total)},
            )
            return await self._find(session, order_id)

    @staticmethod
    async def _find(session: AsyncSession, order_id: str) -> Optional[Order]:
        res = await session.execute(
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    @staticmethod
    async def _cart_lines(session: AsyncSession, user_id: int) -> List[OrderItemIn]:
        res = await session.execute(
            select(CartItem.book_id, CartItem.quantity)
            .join(Cart, Cart.id == CartItem.cart_id)
            .where(Cart.user_id == user_id)
        )
        return [OrderItemIn(book_id=book_id, quantity=qty) for book_id, qty in res.all()]


# 🧾 Order history of the current user
@router.get("")
async def list_orders(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    res = await session.execute(
        select(Order)
        .options(selectinload(Order.items))
        .where(Order.user_id == current_user.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    orders = res.scalars().all()
    out = []
    for o in orders:
        data = OrderOut.model_validate(o).model_dump(mode="json")
        data["items_count"] = len(o.items)
        out.append(data)
    return {"success": True, "orders": out}
