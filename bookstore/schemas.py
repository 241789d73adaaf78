# bookstore/schemas.py
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, EmailStr, Field, StrictInt


# 👤 Users
class PreferencesOut(BaseModel):
    newsletter: bool
    currency: str
    language: str
    class Config:
        from_attributes = True


class AddressOut(BaseModel):
    id: int
    street: str
    city: str
    state: Optional[str] = None
    country: str
    zip_code: Optional[str] = None
    is_default: bool
    class Config:
        from_attributes = True


class UserOut(BaseModel):
    id: int
    email: EmailStr
    name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    preferences: Optional[PreferencesOut] = None
    class Config:
        from_attributes = True


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    is_active: bool = Field(True, alias="isActive")
    class Config:
        populate_by_name = True


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


# 📚 Books
class BookOut(BaseModel):
    id: int
    title: str
    author: str
    description: Optional[str] = None
    price: float
    cover_image_url: Optional[str] = None
    stock: int
    class Config:
        from_attributes = True


class CartBookOut(BaseModel):
    id: int
    title: str
    author: str
    price: float
    cover_image_url: Optional[str] = None
    stock: int
    class Config:
        from_attributes = True


# 🛒 Cart
class CartItemOut(BaseModel):
    id: int
    book_id: int
    quantity: int
    book: CartBookOut
    class Config:
        from_attributes = True


class CartOut(BaseModel):
    id: int
    user_id: int
    items: List[CartItemOut]
    item_count: int
    total: float


class CartAddRequest(BaseModel):
    book_id: int = Field(alias="bookId")
    # strict: 1.5, "2" and true are rejected instead of coerced
    quantity: StrictInt = Field(1, gt=0)
    class Config:
        populate_by_name = True


class CartUpdateRequest(BaseModel):
    book_id: int = Field(alias="bookId")
    quantity: StrictInt = Field(gt=0)
    class Config:
        populate_by_name = True


class CartRemoveRequest(BaseModel):
    book_id: int = Field(alias="bookId")
    class Config:
        populate_by_name = True


# 💳 Payments
class HashRequest(BaseModel):
    merchant_id: Optional[Union[int, str]] = None
    order_id: Optional[str] = None
    amount: Optional[Union[int, float, str]] = None
    currency: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    order_id: Optional[str] = None
    merchant_id: Optional[Union[int, str]] = None


class OrderItemIn(BaseModel):
    """One line of the cart snapshot carried in the gateway's custom_1 field."""
    book_id: int = Field(alias="bookId")
    quantity: int = Field(gt=0)
    class Config:
        populate_by_name = True


# 🧾 Orders
class OrderOut(BaseModel):
    id: int
    order_id: str
    payment_id: Optional[str] = None
    status: str
    total: float
    currency: str
    created_at: Optional[datetime] = None
    class Config:
        from_attributes = True
