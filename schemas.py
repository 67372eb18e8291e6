"""
Database Schemas for the BookNest bookstore

Each Pydantic model below the payload section represents a MongoDB collection.
The collection name is the lowercase of the class name (e.g., Book -> "book",
WishlistEntry is stored in "wishlist"). Payload models validate inbound data
before any storage is touched.
"""
import re
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

Role = Literal["user", "librarian", "admin"]
AuthProvider = Literal["local", "external"]
BookStatus = Literal["draft", "published", "unpublished"]
DeliveryType = Literal["delivery", "pickup"]
OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "refunded"]
ProviderStatus = Literal["pending", "completed", "failed", "refunded"]
BookSort = Literal["newest", "oldest", "title", "price-asc", "price-desc"]

CATEGORIES = (
    "Fiction", "Non-Fiction", "Science Fiction", "Mystery", "Thriller",
    "Romance", "Fantasy", "Biography", "Self-Help",
)
Category = Literal[
    "Fiction", "Non-Fiction", "Science Fiction", "Mystery", "Thriller",
    "Romance", "Fantasy", "Biography", "Self-Help",
]

ISBN_RE = re.compile(r"^(?:\d{9}[\dX]|\d{13})$")


def _normalize_email(value: str) -> str:
    return value.strip().lower()


class Principal(BaseModel):
    """The authenticated actor making a request."""
    id: str
    email: str
    name: str
    role: Role = "user"
    photo_url: Optional[str] = None


# ----- Collections -----

class Account(BaseModel):
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address, stored lower-cased")
    password_hash: Optional[str] = Field(None, description="bcrypt hash, local accounts only")
    photo_url: Optional[str] = None
    role: Role = "user"
    auth_provider: AuthProvider = "local"
    external_subject_id: Optional[str] = Field(None, description="Identity provider subject id")
    last_login_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_provider(self):
        if (self.auth_provider == "local") != bool(self.password_hash):
            raise ValueError("password_hash is required for local accounts only")
        return self


class Book(BaseModel):
    title: str
    author: str
    description: str = ""
    category: Category
    price: float = Field(..., ge=0)
    isbn: str = ""
    publisher: str = ""
    pages: Optional[int] = Field(None, ge=1)
    language: str = "English"
    cover_image_ref: str
    status: BookStatus = "draft"
    owner_id: str = Field(..., description="Librarian who created the book")
    rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)


class DeliveryAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    zip_code: str = Field(..., pattern=r"^\d{5}(-\d{4})?$")
    country: Optional[str] = None


class Order(BaseModel):
    user_id: str
    book_id: str
    contact_email: str
    delivery_type: DeliveryType
    delivery_address: Optional[DeliveryAddress] = None
    pickup_location: Optional[str] = None
    requested_date: datetime
    notes: str = ""
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    transaction_ref: Optional[str] = None


class Review(BaseModel):
    user_id: str
    book_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=500)


class WishlistEntry(BaseModel):
    user_id: str
    book_id: str


class Payment(BaseModel):
    user_id: str
    order_id: str
    amount: float = Field(..., ge=0)
    currency: str = "usd"
    payment_method: str = "stripe"
    transaction_ref: str
    provider_status: ProviderStatus = "pending"


# ----- Payloads -----

class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    photo_url: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v)


class SyncPayload(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    photo_url: Optional[str] = None


class ProfilePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    photo_url: Optional[str] = None


class RolePayload(BaseModel):
    role: Role


class BookPayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=2000)
    category: Category
    price: float = Field(..., ge=0)
    isbn: str = ""
    publisher: str = Field("", max_length=100)
    pages: Optional[int] = Field(None, ge=1)
    language: str = Field("English", max_length=50)
    cover_image_ref: Optional[str] = None
    cover_image_data: Optional[str] = Field(None, description="Base64 image to upload instead of a reference")
    status: BookStatus = "draft"

    @field_validator("title", "author", "isbn", "publisher")
    @classmethod
    def strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("isbn")
    @classmethod
    def check_isbn(cls, v: str) -> str:
        if v and not ISBN_RE.match(v):
            raise ValueError("isbn must be a 10 or 13 digit ISBN")
        return v

    @model_validator(mode="after")
    def check_cover(self):
        if not (self.cover_image_ref or self.cover_image_data):
            raise ValueError("cover_image_ref or cover_image_data is required")
        return self


class BookUpdatePayload(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    category: Optional[Category] = None
    price: Optional[float] = Field(None, ge=0)
    isbn: Optional[str] = None
    publisher: Optional[str] = Field(None, max_length=100)
    pages: Optional[int] = Field(None, ge=1)
    language: Optional[str] = Field(None, max_length=50)
    cover_image_ref: Optional[str] = None
    cover_image_data: Optional[str] = None

    @field_validator("isbn")
    @classmethod
    def check_isbn(cls, v: Optional[str]) -> Optional[str]:
        if v and not ISBN_RE.match(v.strip()):
            raise ValueError("isbn must be a 10 or 13 digit ISBN")
        return v.strip() if v is not None else v


class BookStatusPayload(BaseModel):
    status: BookStatus


class OrderPayload(BaseModel):
    book_id: str
    delivery_type: DeliveryType
    delivery_address: Optional[DeliveryAddress] = None
    pickup_location: Optional[str] = None
    requested_date: datetime
    notes: str = Field("", max_length=500)

    @field_validator("requested_date")
    @classmethod
    def must_be_future(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("requested_date must be in the future")
        return v

    @model_validator(mode="after")
    def check_address(self):
        if self.delivery_type == "delivery" and self.delivery_address is None:
            raise ValueError("delivery_address is required for delivery orders")
        if self.delivery_type == "pickup" and self.delivery_address is not None:
            raise ValueError("delivery_address is only allowed for delivery orders")
        return self


class OrderStatusPayload(BaseModel):
    status: OrderStatus


class ReviewPayload(BaseModel):
    book_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=500)

    @field_validator("comment", mode="before")
    @classmethod
    def strip_comment(cls, v):
        return v.strip() if isinstance(v, str) else v


class ReviewUpdatePayload(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=10, max_length=500)

    @field_validator("comment", mode="before")
    @classmethod
    def strip_comment(cls, v):
        return v.strip() if isinstance(v, str) else v


class WishlistPayload(BaseModel):
    book_id: str


class IntentPayload(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    order_id: Optional[str] = None
    currency: Optional[str] = None


class ConfirmPayload(BaseModel):
    transaction_ref: str = Field(..., min_length=1)
    order_id: str


class PaymentConfirmation(BaseModel):
    """A provider's statement that a payment happened, as consumed by the ledger."""
    transaction_ref: str
    order_id: Optional[str] = None
    amount: float
    currency: str = "usd"
    provider_status: ProviderStatus
    payer_email: Optional[str] = None


class PaymentEvent(BaseModel):
    type: str
    confirmation: Optional[PaymentConfirmation] = None


class IntentResult(BaseModel):
    intent_ref: str
    client_secret: Optional[str] = None
    amount: float
    currency: str
