from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional, List
from uuid import uuid4
from pydantic import BaseModel, Field, PlainSerializer

# Stored as a decimal string so amounts survive Mongo without float rounding
Money = Annotated[Decimal, PlainSerializer(lambda v: str(v), return_type=str)]


class IntentStatus(str, Enum):
    CREATED = "Created"
    VERIFIED = "Verified"
    COMMITTED = "Committed"
    FAILED = "Failed"


# Allowed forward transitions; Failed and Committed are absorbing
TRANSITIONS = {
    IntentStatus.CREATED: {IntentStatus.VERIFIED, IntentStatus.FAILED},
    IntentStatus.VERIFIED: {IntentStatus.COMMITTED, IntentStatus.FAILED},
    IntentStatus.COMMITTED: set(),
    IntentStatus.FAILED: set(),
}

ORDER_STATUS_PAID = "PAID"


class CartItemDB(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex, alias="_id")
    buyer_id: str
    product_id: str
    quantity: int
    added_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class AddressSnapshot(BaseModel):
    house_number: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: str = "India"

    class Config:
        frozen = True


class IntentLineItem(BaseModel):
    cart_item_id: str
    product_id: str
    product_name: Optional[str] = None
    category: Optional[str] = None
    quantity: int
    unit_cost: Money

    @property
    def line_total(self) -> Decimal:
        return self.unit_cost * self.quantity


class PaymentIntentDB(BaseModel):
    id: str = Field(..., alias="_id")  # gateway order id
    buyer_id: str
    address_id: str
    address: AddressSnapshot
    line_items: List[IntentLineItem]
    amount: Money
    currency: str
    status: IntentStatus = IntentStatus.CREATED
    gateway_order_ref: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    commit_attempts: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True

    @property
    def intent_id(self) -> str:
        return self.id


class OrderDB(BaseModel):
    id: str = Field(..., alias="_id")
    intent_id: str
    buyer_id: str
    product_id: str
    product_name: Optional[str] = None
    category: Optional[str] = None
    quantity: int
    amount: Money
    currency: str
    address: AddressSnapshot
    status: str = ORDER_STATUS_PAID
    payment_id: Optional[str] = None
    order_date: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

    @property
    def order_id(self) -> str:
        return self.id

    @staticmethod
    def order_id_for(intent_id: str, line_index: int) -> str:
        return f"{intent_id}-{line_index}"
