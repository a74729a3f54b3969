"""
Database Schemas

MongoDB collection schemas for the storefront, as Pydantic models.
Model name lowercased is the collection name (Order -> "order").
"""

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")


class Address(BaseModel):
    street: str
    city: str
    state: str
    zip: str
    country: str


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lower-cased")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Literal["user", "admin"] = "user"
    address: Optional[Address] = None


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category: str
    images: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    in_stock: bool = True
    rating: float = Field(default=0, ge=0, le=5)
    reviews: List[dict] = Field(default_factory=list)


class CartItem(BaseModel):
    """Cart line as the client holds it; `id` is the client-side handle."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    product_id: str = Field(..., alias="productId")
    name: str
    price: float = Field(..., ge=0)
    image: str = ""
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None

    def to_document(self) -> dict:
        doc = self.model_dump()
        if doc["id"] is None:
            del doc["id"]
        return doc


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class OrderItem(BaseModel):
    """Line item snapshotted at purchase time."""
    product_id: str
    name: str
    price: float
    image: str = ""
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None


class Order(BaseModel):
    """
    Orders are written only by the payment webhook, one per checkout session.
    Collection: "order"
    """
    user_id: str
    stripe_session_id: str = Field(..., description="Checkout session id, unique")
    items: List[OrderItem]
    total: float = Field(..., ge=0)
    shipping_address: Optional[Address] = None
    status: Literal["pending", "processing", "shipped", "delivered", "cancelled"] = "pending"
    payment_status: Optional[str] = None


def to_document(model: Any) -> dict:
    if isinstance(model, BaseModel):
        return model.model_dump()
    return dict(model)
