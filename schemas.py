"""
Database Schemas for the Storefront API

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercase class name. Embedded models (items, addresses, payment results) are
stored inside their parent document.
"""
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

OrderStatus = Literal["Pending", "Processing", "Shipped", "Delivered", "Cancelled", "Refunded"]
PaymentMethod = Literal["PayPal", "Stripe", "Credit Card", "Cash on Delivery", "Negotiable"]
Role = Literal["user", "admin"]
ParameterType = Literal["select", "text", "number", "custom-range", "dimensions"]

TAX_RATE = 0.10
FREE_SHIPPING_THRESHOLD = 100
SHIPPING_FEE = 10.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserAddress(BaseModel):
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""


class User(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Role = "user"
    phone: str = ""
    avatar: str = ""
    address: UserAddress = Field(default_factory=UserAddress)
    is_email_verified: bool = False
    last_login: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[float] = None  # epoch seconds


class Category(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=2, max_length=50)
    description: str = Field("", max_length=500)
    image: str = ""


class Review(BaseModel):
    user_id: str
    name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class ProductImage(BaseModel):
    url: str
    alt: str = ""


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., max_length=2000)
    price: float = Field(..., ge=0)
    original_price: float = 0
    discount: float = Field(0, ge=0, le=100)
    category: str
    subcategory: str = ""
    brand: str = ""
    sku: str
    images: List[ProductImage] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    low_stock_threshold: int = 10
    tags: List[str] = Field(default_factory=list)
    reviews: List[Review] = Field(default_factory=list)
    rating: float = Field(0, ge=0, le=5)
    num_reviews: int = 0
    is_active: bool = True
    is_featured: bool = False
    created_by: Optional[str] = None


class Parameter(BaseModel):
    """
    Configurable product option (size, finish, dimensions...). Orders keep a
    copy of the chosen value in `SelectedParameter`.
    """
    name: str = Field(..., min_length=1)
    type: ParameterType
    options: List[str] = Field(default_factory=list)
    required: bool = False
    unit: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: float = 1
    allow_custom: bool = False
    description: Optional[str] = None
    is_active: bool = True


class SelectedParameter(BaseModel):
    parameter_id: Optional[str] = None
    parameter_name: Optional[str] = None
    parameter_type: Optional[str] = None
    # scalar or structured, e.g. {"length": 2, "width": 1}
    value: Any = None


class OrderItem(BaseModel):
    product_id: str
    name: str = ""
    image: str = ""
    price: float = 0
    quantity: int = Field(..., ge=1)
    selected_parameters: List[SelectedParameter] = Field(default_factory=list)


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    address: str = Field(..., min_length=5, max_length=200)
    city: str = Field(..., min_length=2, max_length=50)
    state: Optional[str] = None
    postal_code: str = Field(..., min_length=3, max_length=20)
    country: str = Field(..., min_length=2, max_length=50)
    phone: str = Field(..., pattern=r"^\+?[0-9 ()-]{7,20}$")


class PaymentResult(BaseModel):
    id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    update_time: Optional[str] = None
    email_address: Optional[EmailStr] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"

    Prices are derived fields: `calculate_prices` must run before every write,
    which `orders.save_order` guarantees.
    """
    user_id: str
    order_items: List[OrderItem] = Field(default_factory=list)
    shipping_address: Optional[ShippingAddress] = None
    payment_method: PaymentMethod = "Negotiable"
    payment_result: Optional[PaymentResult] = None
    items_price: float = 0.0
    tax_price: float = 0.0
    shipping_price: float = 0.0
    total_price: float = 0.0
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    order_status: OrderStatus = "Pending"
    tracking_number: str = ""
    notes: str = ""
    estimated_delivery: Optional[datetime] = None
    negotiation_notes: str = ""

    def calculate_prices(self) -> None:
        items_price = sum(item.price * item.quantity for item in self.order_items)
        self.items_price = items_price
        self.tax_price = round(items_price * TAX_RATE, 2)
        self.shipping_price = 0.0 if items_price > FREE_SHIPPING_THRESHOLD else SHIPPING_FEE
        self.total_price = round(items_price + self.tax_price + self.shipping_price, 2)

    def mark_as_paid(self, payment_result: Optional[PaymentResult]) -> None:
        # callers check is_paid first
        self.is_paid = True
        self.paid_at = utcnow()
        self.payment_result = payment_result
        self.order_status = "Processing"

    def mark_as_delivered(self) -> None:
        self.is_delivered = True
        self.delivered_at = utcnow()
        self.order_status = "Delivered"

    def cancel_order(self, reason: Optional[str] = None) -> None:
        self.order_status = "Cancelled"
        self.notes = reason or "Order cancelled by user"

    def update_tracking(self, tracking_number: str, estimated_delivery: Optional[datetime] = None) -> None:
        self.tracking_number = tracking_number
        self.estimated_delivery = estimated_delivery
        self.order_status = "Shipped"
