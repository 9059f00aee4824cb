import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DECIMAL, ForeignKey, Index, Integer,
    JSON, String, Text, TIMESTAMP, Uuid, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from marketcore.db import Base

Payload = JSON().with_variant(JSONB(), "postgresql")

ORDER_PAID      = "paid"
ORDER_DELIVERED = "delivered"

PAYOUT_PENDING   = "pending"
PAYOUT_SENT      = "sent"
PAYOUT_ESCALATED = "escalated"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="buyer")       # admin | premium | buyer
    status = Column(String(20), nullable=False, default="active")    # active | suspended
    avatar_url = Column(String, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_products_quantity_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(DECIMAL(18, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    city = Column(String(120), nullable=True)
    pix_key = Column(String(255), nullable=False)
    pix_key_type = Column(String(10), nullable=False, default="RANDOM")  # CPF | CNPJ | EMAIL | PHONE | RANDOM
    delivery_method = Column(String(20), nullable=False, default="shipping")  # shipping | pickup
    image_url = Column(String, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(String(100), nullable=False, unique=True)
    buyer_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    seller_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    product_title = Column(String(255), nullable=False)
    price = Column(DECIMAL(18, 2), nullable=False)
    shipping_address = Column(Payload, nullable=True)
    status = Column(String(20), nullable=False, default=ORDER_PAID)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    delivered_at = Column(TIMESTAMP(timezone=True), nullable=True)
    purged_at = Column(TIMESTAMP(timezone=True), nullable=True)

class PendingPurchase(Base):
    """What a Pix charge was issued for; confirm settles from this row, not from the caller."""
    __tablename__ = "pending_purchases"

    payment_id = Column(String(100), primary_key=True)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    buyer_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    amount = Column(DECIMAL(18, 2), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)

class OrderMessage(Base):
    __tablename__ = "order_messages"
    __table_args__ = (
        Index("ix_order_messages_order_created", "order_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, nullable=True, unique=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False)
    sender_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)

class DirectMessage(Base):
    __tablename__ = "direct_messages"
    __table_args__ = (
        Index("ix_direct_messages_sender_receiver", "sender_id", "receiver_id"),
        Index("ix_direct_messages_receiver_sender", "receiver_id", "sender_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, nullable=True, unique=True)
    sender_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    receiver_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)

class Payout(Base):
    __tablename__ = "payouts"

    order_id = Column(Uuid, ForeignKey("orders.id"), primary_key=True)
    seller_id = Column(Uuid, nullable=False)
    amount = Column(DECIMAL(18, 2), nullable=False)
    pix_key = Column(String(255), nullable=False)
    pix_key_type = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default=PAYOUT_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    gateway_ref = Column(String(100), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())

class Compensation(Base):
    __tablename__ = "compensations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(String(100), nullable=False, unique=True)
    buyer_id = Column(Uuid, nullable=False)
    product_id = Column(Uuid, nullable=False)
    amount = Column(DECIMAL(18, 2), nullable=False)
    kind = Column(String(30), nullable=False, default="refund_required")
    reason = Column(String(100), nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)

class FeedOutbox(Base):
    __tablename__ = "feed_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String(120), nullable=False)
    event_type = Column(String(20), nullable=False)
    payload = Column(Payload, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    published_at = Column(TIMESTAMP(timezone=True), nullable=True)
