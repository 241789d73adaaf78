import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .config import Settings, get_settings
from .database import get_session
from .errors import AuthenticationFailed, Conflict, NotFound
from .models import User
from .schemas import LoginRequest, SignupRequest, UserOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

# Argon2 for new hashes; bcrypt stays in the context so older hashes still verify.
pwd_context = CryptContext(schemes=["argon2", "bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


# 🔐 Utilities
def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (UnknownHashError, ValueError):
        # unrecognised or corrupt stored hash counts as a failed login, not a 500
        return False


def create_access_token(user: User, settings: Settings) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode = {"sub": str(user.id), "email": user.email, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> int:
    """Return the user id carried by a valid token."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise AuthenticationFailed("Token expired")
    except JWTError:
        raise AuthenticationFailed("Invalid token")
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise AuthenticationFailed("Invalid token")


async def load_user(session: AsyncSession, user_id: int) -> Optional[User]:
    result = await session.execute(
        select(User).options(selectinload(User.preferences)).where(User.id == user_id)
    )
    return result.scalar_one_or_none()


async def create_user(session: AsyncSession, payload: SignupRequest) -> User:
    email = payload.email.lower()
    existing = await session.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        raise Conflict("User with this email already exists")

    user = User(
        email=email,
        password_hash=get_password_hash(payload.password),
        name=payload.name,
        first_name=payload.first_name or payload.name,
        last_name=payload.last_name,
        is_active=payload.is_active,
    )
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        # lost a race with a concurrent signup for the same email
        await session.rollback()
        raise Conflict("User with this email already exists")
    return await load_user(session, user.id)


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> User:
    user_id = decode_access_token(token, settings)
    user = await load_user(session, user_id)
    if user is None:
        raise AuthenticationFailed("Unauthorized")
    if not user.is_active:
        raise AuthenticationFailed("Account is inactive")
    return user


async def get_optional_user(
    token: Optional[str] = Depends(optional_oauth2_scheme),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> Optional[User]:
    """Resolve the caller when a valid bearer token is present, else None."""
    if not token:
        return None
    try:
        user_id = decode_access_token(token, settings)
    except AuthenticationFailed:
        return None
    user = await load_user(session, user_id)
    if user is None or not user.is_active:
        return None
    return user


# ✅ Signup
@router.post("/signup")
async def signup(
    payload: SignupRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    user = await create_user(session, payload)
    logger.info("user signed up", extra={"user_id": user.id})
    return {
        "success": True,
        "user": UserOut.model_validate(user).model_dump(mode="json"),
        "token": create_access_token(user, settings),
        "message": "Account created successfully",
    }


# ✅ Login
@router.post("/login")
async def login(
    payload: LoginRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    result = await session.execute(
        select(User).options(selectinload(User.preferences)).where(User.email == payload.email.lower())
    )
    user = result.scalar_one_or_none()

    if user is None:
        raise AuthenticationFailed("Invalid email or password")
    if not user.is_active:
        raise AuthenticationFailed("Account is inactive")
    if not verify_password(payload.password, user.password_hash):
        raise AuthenticationFailed("Invalid email or password")

    logger.info("user logged in", extra={"user_id": user.id})
    return {
        "success": True,
        "user": UserOut.model_validate(user).model_dump(mode="json"),
        "token": create_access_token(user, settings),
    }


# ✅ Token check
@router.get("/me", response_model=UserOut)
async def get_me(
    token: str = Depends(oauth2_scheme),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    user = await load_user(session, decode_access_token(token, settings))
    if user is None:
        raise NotFound("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is inactive")
    return user
