"""
Document and request schemas.

Every collection document is stored with camelCase field names; the models
accept either camelCase (wire/storage) or snake_case (Python) names.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from .store import to_datetime

# Upper bound for a single cart or order line
MAX_LINE_QUANTITY = 100


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, **kwargs)


# -----------------------------
# Coupons
# -----------------------------
class CouponBase(CamelModel):
    code: str = ""
    description: Optional[str] = None
    value: float = Field(0, ge=0)
    min_order_amount: float = Field(0, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    used_count: int = Field(0, ge=0)
    user_usage_limit: Optional[int] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("start_date", "expiry_date", mode="before")
    @classmethod
    def _coerce_timestamp(cls, v: Any) -> Optional[datetime]:
        return to_datetime(v)

    def to_document(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"code"}, **kwargs)

    def summary(self) -> Dict[str, Any]:
        return self.model_dump(
            by_alias=True,
            include={"code", "type", "value", "description", "min_order_amount", "max_discount", "special_price"},
        )


class PercentageCoupon(CouponBase):
    type: Literal["percentage"] = "percentage"
    value: float = Field(..., ge=0, le=100)
    max_discount: Optional[float] = Field(None, ge=0)


class FixedCoupon(CouponBase):
    type: Literal["fixed"] = "fixed"
    value: float = Field(..., ge=0)


class FreeShippingCoupon(CouponBase):
    type: Literal["freeShipping"] = "freeShipping"


class BuyTwoGetOneCoupon(CouponBase):
    type: Literal["buy2get1"] = "buy2get1"


class BuyThreeSpecialCoupon(CouponBase):
    type: Literal["buy3special"] = "buy3special"
    special_price: Optional[float] = Field(None, ge=0)

    @property
    def unit_special_price(self) -> float:
        return self.special_price if self.special_price is not None else self.value


Coupon = Annotated[
    Union[PercentageCoupon, FixedCoupon, FreeShippingCoupon, BuyTwoGetOneCoupon, BuyThreeSpecialCoupon],
    Field(discriminator="type"),
]
_coupon_adapter = TypeAdapter(Coupon)


def parse_coupon(code: str, data: Dict[str, Any]) -> CouponBase:
    """Validate a stored or submitted coupon document; raises pydantic.ValidationError."""
    return _coupon_adapter.validate_python({**data, "code": code})


class CartLine(CamelModel):
    product_id: Optional[str] = None
    name: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1, le=MAX_LINE_QUANTITY)


class FreeItem(CamelModel):
    product_id: Optional[str] = None
    name: Optional[str] = None
    price: float
    quantity: int = 1


class CouponQuote(CamelModel):
    code: str
    order_amount: float
    discount_amount: float
    percentage: float
    free_items: List[FreeItem] = []
    final_amount: float


class CouponApplyRequest(CamelModel):
    coupon_code: str = Field(..., min_length=1)
    order_amount: float = Field(..., ge=0)
    user_id: Optional[str] = None
    cart_items: Optional[List[CartLine]] = None


class CouponValidateRequest(CamelModel):
    coupon_code: str = Field(..., min_length=1)
    order_amount: Optional[float] = Field(None, ge=0)
    user_id: Optional[str] = None


class CouponUseRequest(CamelModel):
    coupon_code: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)
    discount_amount: float = Field(..., ge=0)
    user_id: Optional[str] = None


# -----------------------------
# Auth / Users
# -----------------------------
class UserRegister(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone_number: Optional[str] = ""


class UserLogin(CamelModel):
    email: EmailStr
    password: str


class SessionRequest(CamelModel):
    id_token: str = Field(..., min_length=1)


class ProfileUpdate(CamelModel):
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    phone_number: Optional[str] = None


class Address(CamelModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=r"^\+?\d{10,13}$")
    address1: str = Field(..., min_length=1)
    address2: Optional[str] = ""
    city: str
    state: str
    pincode: str = Field(..., pattern=r"^\d{6}$")
    country: str = "India"
    is_default: bool = False


class PreferencesUpdate(CamelModel):
    newsletter: Optional[bool] = None
    notifications: Optional[bool] = None
    whatsapp_updates: Optional[bool] = None


class WishlistAdd(CamelModel):
    product_id: str = Field(..., min_length=1)


class UserAdminUpdate(CamelModel):
    role: Optional[Literal["customer", "staff", "admin"]] = None
    is_active: Optional[bool] = None


# -----------------------------
# Catalog
# -----------------------------
class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = ""
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    category: str
    brand: Optional[str] = ""
    images: List[str] = []
    inventory: int = Field(0, ge=0)
    sku: Optional[str] = None
    weight: float = Field(0.5, gt=0)
    tags: List[str] = []
    sizes: List[str] = []
    is_active: bool = True
    is_featured: bool = False


class ProductUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    images: Optional[List[str]] = None
    inventory: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    weight: Optional[float] = Field(None, gt=0)
    tags: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class InventoryAdjust(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int
    operation: Literal["add", "subtract", "set"]
    reason: Optional[str] = None


# -----------------------------
# Cart / Orders
# -----------------------------
class CartAdd(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=MAX_LINE_QUANTITY)
    size: Optional[str] = None


class CartUpdate(CamelModel):
    quantity: int = Field(..., ge=1, le=MAX_LINE_QUANTITY)


class OrderItemIn(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1, le=MAX_LINE_QUANTITY)
    size: Optional[str] = None


ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")


class OrderCreate(CamelModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    coupon_code: Optional[str] = None
    payment_method: Literal["razorpay", "cod"] = "razorpay"
    notes: Optional[str] = ""
    gift_wrap: bool = False


class OrderStatusUpdate(CamelModel):
    status: Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
    note: Optional[str] = None


class ShipmentCreate(CamelModel):
    length: float = 10
    breadth: float = 10
    height: float = 10
    weight: Optional[float] = None


# -----------------------------
# Reviews
# -----------------------------
class ReviewCreate(CamelModel):
    product_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=3, max_length=100)
    comment: str = Field(..., min_length=10, max_length=1000)
    order_id: Optional[str] = None


class ReviewReport(CamelModel):
    reason: str = Field(..., min_length=3, max_length=500)


class ReviewModeration(CamelModel):
    status: Literal["approved", "rejected"]


# -----------------------------
# Payments
# -----------------------------
class PaymentOrderCreate(CamelModel):
    order_id: str = Field(..., min_length=1)
    currency: Literal["INR", "USD"] = "INR"


class PaymentVerify(CamelModel):
    razorpay_order_id: str = Field(..., min_length=1, alias="razorpay_order_id")
    razorpay_payment_id: str = Field(..., min_length=1, alias="razorpay_payment_id")
    razorpay_signature: str = Field(..., min_length=1, alias="razorpay_signature")
    order_id: str = Field(..., min_length=1)


class PaymentFailure(CamelModel):
    order_id: str = Field(..., min_length=1)
    error: Dict[str, Any]


class RefundRequest(CamelModel):
    payment_id: str = Field(..., min_length=1)
    amount: Optional[float] = Field(None, gt=0)
    reason: str = Field(..., min_length=1)


# -----------------------------
# Content
# -----------------------------
class PageUpsert(CamelModel):
    title: str = Field(..., min_length=1)
    slug: str = Field(..., pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    content: str = ""
    status: Literal["draft", "published", "archived"] = "draft"
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None


class PopupTargeting(CamelModel):
    devices: List[Literal["desktop", "mobile", "tablet"]] = ["desktop", "mobile", "tablet"]
    new_visitors: Optional[bool] = None
    returning_visitors: Optional[bool] = None


class PopupTriggers(CamelModel):
    pages: List[str] = ["all_pages"]
    delay_seconds: int = Field(0, ge=0)
    frequency: Literal["always", "once_per_session", "once_per_day", "once"] = "once_per_session"


class PopupUpsert(CamelModel):
    title: str = Field(..., min_length=1)
    content: str = ""
    image: Optional[str] = None
    cta_text: Optional[str] = None
    cta_link: Optional[str] = None
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    targeting: PopupTargeting = PopupTargeting()
    triggers: PopupTriggers = PopupTriggers()
    priority: int = 0

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _coerce_timestamp(cls, v: Any) -> Optional[datetime]:
        return to_datetime(v)
