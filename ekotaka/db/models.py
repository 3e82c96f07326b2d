"""SQLAlchemy database models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ekotaka.db.encryption import EncryptedString

# Nested document fields; JSONB on PostgreSQL, plain JSON elsewhere
JSONDoc = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid4().hex


class PlasticCategory(str, Enum):
    """Resin categories a pickup can be filed under."""

    PET = "PET"
    HDPE = "HDPE"
    LDPE = "LDPE"
    PP = "PP"
    PS = "PS"
    OTHER = "Other"

    @classmethod
    def values(cls) -> list[str]:
        return [c.value for c in cls]


class PickupStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    PAID = "paid"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    REFUNDED = "refunded"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    BRAND_PURCHASE = "brand_purchase"  # brand pays for an order
    COLLECTOR_PAYOUT = "collector_payout"  # platform pays a collector for a pickup


class PaymentMethod(str, Enum):
    BKASH = "bkash"
    NAGAD = "nagad"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"


class Role(str, Enum):
    BRAND = "brand"
    COLLECTOR = "collector"
    SYSTEM = "system"


class HotspotStatus(str, Enum):
    ACTIVE = "active"
    DEPLETED = "depleted"
    EXPIRED = "expired"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Pickup(Base):
    """A collector's submitted batch of plastic waste."""

    __tablename__ = "pickups"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    collector_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(8), nullable=False)
    estimated_weight: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    actual_weight: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    # Weight already promised to non-cancelled orders; moved only by conditional updates
    committed_weight: Mapped[Decimal] = mapped_column(
        Numeric(10, 3), default=Decimal("0"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(16), default=PickupStatus.PENDING.value, nullable=False, index=True
    )
    # {"coordinates": [lng, lat], "address": str}
    location: Mapped[dict] = mapped_column(JSONDoc, nullable=False)
    longitude: Mapped[float] = mapped_column(nullable=False)
    latitude: Mapped[float] = mapped_column(nullable=False)
    # {"before": {"id", "url", ...}, "after": {...} | None}
    photos: Mapped[dict] = mapped_column(JSONDoc, nullable=False)
    verification: Mapped[Optional[dict]] = mapped_column(JSONDoc, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    history: Mapped[list["PickupStatusEvent"]] = relationship(
        "PickupStatusEvent",
        back_populates="pickup",
        order_by="PickupStatusEvent.seq",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("estimated_weight > 0", name="ck_pickup_estimated_weight"),
        CheckConstraint(
            "actual_weight IS NULL OR actual_weight >= 0", name="ck_pickup_actual_weight"
        ),
        CheckConstraint("committed_weight >= 0", name="ck_pickup_committed_nonnegative"),
        CheckConstraint(
            "committed_weight <= COALESCE(actual_weight, estimated_weight)",
            name="ck_pickup_committed_within_weight",
        ),
        Index("ix_pickups_collector_created", "collector_id", "created_at"),
        Index("ix_pickups_lat_lng", "latitude", "longitude"),
    )

    @property
    def base_weight(self) -> Decimal:
        """Verified weight when known, else the collector's estimate."""
        return self.actual_weight if self.actual_weight is not None else self.estimated_weight

    @property
    def available_weight(self) -> Decimal:
        return max(Decimal("0"), Decimal(self.base_weight) - Decimal(self.committed_weight or 0))


class PickupStatusEvent(Base):
    """Append-only status history row for a pickup."""

    __tablename__ = "pickup_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pickup_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("pickups.id"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    pickup: Mapped["Pickup"] = relationship("Pickup", back_populates="history")

    __table_args__ = (UniqueConstraint("pickup_id", "seq", name="uq_pickup_event_seq"),)


class Order(Base):
    """A brand's purchase against a verified pickup."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    brand_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    collector_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    pickup_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("pickups.id"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=OrderStatus.PENDING.value, nullable=False, index=True
    )
    order_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processing_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(16), default=PaymentStatus.PENDING.value, nullable=False, index=True
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shipping_address: Mapped[dict] = mapped_column(JSONDoc, nullable=False)
    pickup_location: Mapped[Optional[dict]] = mapped_column(JSONDoc, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    collector_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    estimated_delivery_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    order_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONDoc, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    history: Mapped[list["OrderStatusEvent"]] = relationship(
        "OrderStatusEvent",
        back_populates="order",
        order_by="OrderStatusEvent.seq",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    pickup: Mapped["Pickup"] = relationship("Pickup", lazy="selectin")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_quantity"),
        CheckConstraint("unit_price > 0", name="ck_order_unit_price"),
        Index("ix_orders_brand_created", "brand_id", "created_at"),
        Index("ix_orders_collector_created", "collector_id", "created_at"),
        Index("ix_orders_brand_status", "brand_id", "status"),
    )


class OrderStatusEvent(Base):
    """Append-only status history row for an order."""

    __tablename__ = "order_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[str] = mapped_column(String(32), ForeignKey("orders.id"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    changed_by_role: Mapped[str] = mapped_column(String(16), nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="history")

    __table_args__ = (UniqueConstraint("order_id", "seq", name="uq_order_event_seq"),)


class Transaction(Base):
    """A payment attempt tied to a pickup, and for purchases to an order."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    transaction_type: Mapped[str] = mapped_column(String(24), nullable=False)
    collector_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    brand_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    pickup_id: Mapped[str] = mapped_column(String(32), ForeignKey("pickups.id"), nullable=False, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("orders.id"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=TransactionStatus.PENDING.value, nullable=False, index=True
    )
    initiated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transaction_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONDoc, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transaction_amount"),
        Index("ix_transactions_collector_created", "collector_id", "created_at"),
    )


class EkoTokenTransaction(Base):
    """Reward-token ledger entry. Positive amounts credit, negative debit."""

    __tablename__ = "eko_token_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    collector_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    pickup_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    entry_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONDoc, nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("collector_id", "seq", name="uq_token_ledger_seq"),
        CheckConstraint("balance_after >= 0", name="ck_token_balance_nonnegative"),
    )


class Conversation(Base):
    """A brand/collector chat thread."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    brand_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    collector_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    related_order_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    related_pickup_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # {"messageId", "content", "senderId", "senderRole", "sentAt"}
    last_message: Mapped[Optional[dict]] = mapped_column(JSONDoc, nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    unread_brand: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unread_collector: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    archived_brand: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_collector: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "brand_id", "collector_id", "related_order_id", name="uq_conversation_participants"
        ),
    )


class Message(Base):
    """Append-only chat message."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("conversations.id"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    read_by_brand: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    read_by_collector: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    attachments: Mapped[Optional[list]] = mapped_column(JSONDoc, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_message_seq"),
    )


class CollectorProfile(Base):
    """Collector profile plus a stats cache recomputed from source records."""

    __tablename__ = "collector_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    personal_info: Mapped[dict] = mapped_column(JSONDoc, default=dict, nullable=False)
    preferences: Mapped[dict] = mapped_column(JSONDoc, default=dict, nullable=False)
    bkash_number: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    nagad_number: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    account_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    stats: Mapped[dict] = mapped_column(JSONDoc, default=dict, nullable=False)
    stats_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class BrandProfile(Base):
    """Brand profile plus a stats cache recomputed from source records."""

    __tablename__ = "brand_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    company_info: Mapped[dict] = mapped_column(JSONDoc, default=dict, nullable=False)
    contact_info: Mapped[dict] = mapped_column(JSONDoc, default=dict, nullable=False)
    preferences: Mapped[dict] = mapped_column(JSONDoc, default=dict, nullable=False)
    billing_address: Mapped[Optional[dict]] = mapped_column(JSONDoc, nullable=True)
    stats: Mapped[dict] = mapped_column(JSONDoc, default=dict, nullable=False)
    stats_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class WasteHotspot(Base):
    """Community-reported location believed to hold collectable waste."""

    __tablename__ = "waste_hotspots"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    longitude: Mapped[float] = mapped_column(nullable=False)
    latitude: Mapped[float] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=HotspotStatus.ACTIVE.value, nullable=False, index=True
    )
    total_weight: Mapped[float] = mapped_column(default=0.0, nullable=False)
    # {"PET": kg, "HDPE": kg, ...}
    categories: Mapped[dict] = mapped_column(JSONDoc, default=dict, nullable=False)
    reported_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reporter_type: Mapped[str] = mapped_column(String(16), default="collector", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    access_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reported_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_collected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    collections: Mapped[list["HotspotCollection"]] = relationship(
        "HotspotCollection",
        back_populates="hotspot",
        order_by="HotspotCollection.seq",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("total_weight >= 0", name="ck_hotspot_weight"),
        Index("ix_hotspots_lat_lng", "latitude", "longitude"),
    )


class HotspotCollection(Base):
    """Append-only record of weight collected from a hotspot."""

    __tablename__ = "hotspot_collections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    hotspot_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("waste_hotspots.id"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    collector_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pickup_id: Mapped[str] = mapped_column(String(32), nullable=False)
    weight: Mapped[float] = mapped_column(nullable=False)
    category: Mapped[str] = mapped_column(String(8), nullable=False)
    collected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    hotspot: Mapped["WasteHotspot"] = relationship("WasteHotspot", back_populates="collections")

    __table_args__ = (UniqueConstraint("hotspot_id", "seq", name="uq_hotspot_collection_seq"),)
