from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Literal, Optional
from uuid import UUID
from decimal import Decimal
from datetime import datetime

class ShippingAddress(BaseModel):
    street: str
    number: str
    complement: Optional[str] = None
    neighborhood: str
    city: str
    state: str
    zip_code: str

class PaymentIntent(BaseModel):
    id: str
    amount: Decimal
    description: str
    qr_code_image: Optional[str] = None
    copy_paste_code: Optional[str] = None
    status: str = "PENDING"

class PurchaseRequest(BaseModel):
    product_id: UUID
    buyer_id: UUID

class ConfirmRequest(BaseModel):
    product_id: UUID
    buyer_id: UUID
    amount: Decimal = Field(..., gt=0)
    description: str = ""
    shipping_address: Optional[ShippingAddress] = None
    timeout: Optional[float] = Field(None, ge=0, le=300, description="Seconds to keep polling the gateway")

class DeliverRequest(BaseModel):
    seller_id: UUID
    confirm: bool = Field(False, description="Must be true: delivery erases the order chat")

class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: str
    buyer_id: UUID
    seller_id: UUID
    product_id: UUID
    product_title: str
    price: Decimal
    shipping_address: Optional[ShippingAddress]
    status: str
    created_at: Optional[datetime]
    delivered_at: Optional[datetime]

class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    role: str
    status: str
    avatar_url: Optional[str]

class ChatMessage(BaseModel):
    """A message as held in a live conversation log.

    ``id`` is None for an optimistic echo that the store has not acknowledged
    yet; ``client_id`` is the correlation id shared by the echo and the
    stored record.
    """
    model_config = ConfigDict(from_attributes=True)

    id: Optional[UUID] = None
    client_id: Optional[UUID] = None
    sender_id: UUID
    content: str
    created_at: datetime
    order_id: Optional[UUID] = None
    receiver_id: Optional[UUID] = None
    pending: bool = False

class ChangeEvent(BaseModel):
    topic: str
    kind: Literal["insert", "delete"]
    row: dict[str, Any]
