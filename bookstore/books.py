import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_session
from .errors import NotFound
from .models import Book
from .schemas import BookOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/books", tags=["books"])


async def list_active_books(session: AsyncSession):
    result = await session.execute(select(Book).where(Book.is_active.is_(True)).order_by(Book.id))
    return result.scalars().all()


@router.get("")
async def list_books(session: AsyncSession = Depends(get_session)):
    books = await list_active_books(session)
    logger.debug("books fetched", extra={"count": len(books)})
    return {
        "success": True,
        "books": [BookOut.model_validate(b).model_dump(mode="json") for b in books],
        "total": len(books),
    }


@router.get("/{book_id}", response_model=BookOut)
async def get_book(book_id: int, session: AsyncSession = Depends(get_session)):
    result = await session.execute(select(Book).where(Book.id == book_id))
    book = result.scalar_one_or_none()
    if book is None or not book.is_active:
        raise NotFound("Book not found or unavailable")
    return book
