from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime
from shared.security_config import validate_identifier


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        coerce_numbers_to_str = True


# --- Cart ---
class CartItemAdd(CamelModel):
    buyer_id: str
    product_id: str
    quantity: int = 1

    @field_validator('buyer_id', 'product_id')
    def check_ids(cls, v):
        return validate_identifier(v)

class CartItemResponse(CamelModel):
    id: str
    buyer_id: str
    product_id: str
    quantity: int
    added_at: datetime

class CartLineResponse(CamelModel):
    id: str
    product_id: str
    product_name: Optional[str] = None
    category: Optional[str] = None
    unit_cost: float
    quantity: int
    line_total: float
    added_at: datetime

class CartAddResponse(CamelModel):
    success: bool = True
    message: str
    cart_size: int

class MessageResponse(CamelModel):
    success: bool = True
    message: str


# --- Payment ---
class CreateOrderRequest(CamelModel):
    buyer_id: str
    address_id: str

    @field_validator('buyer_id', 'address_id')
    def check_ids(cls, v):
        return validate_identifier(v)

class CreateOrderResponse(CamelModel):
    key: str
    order_id: str
    amount: float
    currency: str
    success: bool = True

class VerifyPaymentRequest(CamelModel):
    razorpay_order_id: str = Field(..., alias="razorpay_order_id")
    razorpay_payment_id: str = Field(..., alias="razorpay_payment_id")
    razorpay_signature: str = Field(..., alias="razorpay_signature")
    buyer_id: str
    address_id: Optional[str] = None

class GatewayCallback(CamelModel):
    gateway_order_id: str
    gateway_payment_id: str
    signature: str

class VerifyPaymentResponse(CamelModel):
    success: bool
    message: str
    code: Optional[str] = None
    order_ids: List[str] = []

class IntentResponse(CamelModel):
    intent_id: str
    buyer_id: str
    status: str
    amount: float
    currency: str
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# --- Orders ---
class AddressResponse(CamelModel):
    house_number: str
    street: str
    city: str
    state: str
    pincode: str
    country: str

class OrderResponse(CamelModel):
    order_id: str
    intent_id: str
    buyer_id: str
    product_id: str
    product_name: Optional[str] = None
    category: Optional[str] = None
    quantity: int
    amount: float
    currency: str
    address: AddressResponse
    status: str
    payment_id: Optional[str] = None
    order_date: datetime
