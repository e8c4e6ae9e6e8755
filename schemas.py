"""
Database Schemas for the Cake Shop

Collections:
- cake: sellable cakes with weight/price tiers
- order: placed orders with frozen line-item prices
- user: customers and admins (managed by the auth service, read for display only)

Documents are stored with camelCase keys; the models accept either the
camelCase key or the snake_case attribute name.
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class Weight(str, Enum):
    G500 = "500g"
    KG1 = "1kg"
    KG1_5 = "1.5kg"
    KG2 = "2kg"
    KG2_5 = "2.5kg"
    KG3 = "3kg"


class Category(str, Enum):
    BIRTHDAY = "Birthday"
    WEDDING = "Wedding"
    ANNIVERSARY = "Anniversary"
    CORPORATE = "Corporate"
    FESTIVAL = "Festival"
    OTHER = "Other"


class OrderStatus(str, Enum):
    PLACED = "Order Placed"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


DELIVERY_CITY = "Hyderabad"
PINCODE_PATTERN = r"^[1-9][0-9]{5}$"
PHONE_PATTERN = r"^[6-9]\d{9}$"

FlavorName = Annotated[str, Field(max_length=50)]


class Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        str_strip_whitespace=True,
        validate_default=True,
    )


# -----
# Cakes
# -----

class WeightOption(Document):
    weight: Weight = Field(..., description="One of 500g, 1kg, 1.5kg, 2kg, 2.5kg, 3kg")
    price: float = Field(..., ge=0, description="Price for this weight")


class Cake(Document):
    name: str = Field(..., min_length=2, max_length=100, description="Cake name")
    flavor: Optional[FlavorName] = Field(None, description="Legacy single flavor, mirrors flavors[0]")
    flavors: List[FlavorName] = Field(..., min_length=1, description="Flavor names")
    price: float = Field(..., ge=0, description="Starting price shown in listings")
    description: str = Field(..., min_length=10, max_length=500)
    weight_options: List[WeightOption] = Field(..., min_length=1)
    image_url: str = Field(..., min_length=1, description="Opaque image reference")
    category: Category = Category.OTHER
    rating: float = Field(0, ge=0, description="Sum of review ratings")
    review_count: int = Field(0, ge=0)
    is_available: bool = True
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def sync_legacy_flavor(self):
        self.flavor = self.flavors[0]
        return self

    @field_validator("weight_options")
    @classmethod
    def unique_weights(cls, options: List[WeightOption]):
        weights = [o.weight for o in options]
        if len(set(weights)) != len(weights):
            raise ValueError("Each weight option can only be listed once")
        return options


def average_rating(doc: dict) -> float:
    count = doc.get("reviewCount") or 0
    if count <= 0:
        return 0
    return round(doc.get("rating", 0) / count, 1)


# ------
# Orders
# ------

class OrderItem(Document):
    cake_id: str
    quantity: int = Field(..., ge=1)
    weight: Weight
    price: float = Field(..., ge=0, description="Tier price at the time of order")


class CustomerInfo(Document):
    name: str = Field(..., min_length=2, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN, description="10-digit mobile number")
    email: EmailStr

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str):
        return v.lower()


class DeliveryAddress(Document):
    street: str = Field(..., min_length=5, max_length=100)
    area: str = Field(..., min_length=2, max_length=50)
    city: str = DELIVERY_CITY
    pincode: str = Field(..., pattern=PINCODE_PATTERN, description="6-digit pincode")
    landmark: Optional[str] = None

    @field_validator("city")
    @classmethod
    def only_hyderabad(cls, v: str):
        if v != DELIVERY_CITY:
            raise ValueError(f"We only deliver in {DELIVERY_CITY}")
        return v


def formatted_address(address: dict) -> str:
    text = f"{address['street']}, {address['area']}, {address['city']} - {address['pincode']}"
    if address.get("landmark"):
        text += f", Near {address['landmark']}"
    return text


class Order(Document):
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    customer_info: CustomerInfo
    delivery_address: DeliveryAddress
    status: OrderStatus = OrderStatus.PLACED
    estimated_delivery: datetime
    cancellation_reason: Optional[str] = Field(None, max_length=500)
    order_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=200)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ----------------
# Request payloads
# ----------------

class OrderItemRequest(Document):
    cake_id: str
    quantity: int = Field(..., ge=1)
    weight: Weight

    @field_validator("cake_id")
    @classmethod
    def valid_cake_id(cls, v: str):
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid cake ID")
        return v


class OrderCreate(Document):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    customer_info: CustomerInfo
    delivery_address: DeliveryAddress
    estimated_delivery: datetime
    notes: Optional[str] = Field(None, max_length=200)

    @field_validator("estimated_delivery", mode="before")
    @classmethod
    def date_only(cls, v):
        # "2024-05-01" means local midnight of that day
        if isinstance(v, str) and len(v) == 10:
            v = date.fromisoformat(v)
        if isinstance(v, date) and not isinstance(v, datetime):
            return datetime(v.year, v.month, v.day)
        return v


class StatusUpdate(Document):
    status: Optional[str] = None
    cancellation_reason: Optional[str] = None


class AvailabilityUpdate(Document):
    is_available: bool
