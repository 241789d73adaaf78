from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .auth import create_user
from .database import get_session
from .models import User
from .schemas import AddressOut, SignupRequest, UserOut

router = APIRouter(prefix="/api/users", tags=["users"])


def _user_summary(user: User) -> dict:
    data = UserOut.model_validate(user).model_dump(mode="json")
    data["addresses"] = [AddressOut.model_validate(a).model_dump(mode="json") for a in user.addresses]
    data["orders"] = [
        {"id": o.id, "order_id": o.order_id, "total": str(o.total), "status": o.status, "created_at": o.created_at}
        for o in user.orders
    ]
    return data


# password hashes never leave this module
@router.get("")
async def list_users(session: AsyncSession = Depends(get_session)):
    result = await session.execute(
        select(User)
        .options(selectinload(User.preferences), selectinload(User.addresses), selectinload(User.orders))
        .order_by(User.created_at.desc(), User.id.desc())
    )
    users = [_user_summary(u) for u in result.scalars().all()]
    return {"success": True, "users": users, "total": len(users), "message": f"Found {len(users)} users"}


@router.post("", status_code=201)
async def create_user_endpoint(payload: SignupRequest, session: AsyncSession = Depends(get_session)):
    user = await create_user(session, payload)
    return {
        "success": True,
        "user": UserOut.model_validate(user).model_dump(mode="json"),
        "message": "User created successfully",
    }
