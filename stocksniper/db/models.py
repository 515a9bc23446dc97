"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
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

from stocksniper.db.encryption import EncryptedString

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Tier(str, Enum):
    """Subscription tier; limits live in settings.tier_limits."""

    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


class WatchMode(str, Enum):
    NOTIFY = "notify"
    AUTO_PURCHASE = "auto_purchase"


class StockStatus(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"


class AttemptStatus(str, Enum):
    """Purchase attempt lifecycle. Order of the forward path matters."""

    DETECTED = "detected"
    CARTED = "carted"
    CHECKOUT_STARTED = "checkout_started"
    CHECKOUT_PAYMENT = "checkout_payment"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActivityEventType(str, Enum):
    STOCK_CHECK = "stock_check"
    STOCK_FOUND = "stock_found"
    RESOLUTION_ERROR = "resolution_error"
    PURCHASE_TRIGGERED = "purchase_triggered"
    PURCHASE_SKIPPED = "purchase_skipped"
    CART_ADD = "cart_add"
    CHECKOUT_START = "checkout_start"
    CHECKOUT_COMPLETE = "checkout_complete"
    CHECKOUT_FAILED = "checkout_failed"
    NOTIFICATION_SENT = "notification_sent"
    ERROR = "error"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Tenant(Base):
    """Account that owns watch items and retailer credentials."""

    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    tier: Mapped[str] = mapped_column(String(16), default=Tier.FREE.value, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    watch_items: Mapped[list["WatchItem"]] = relationship(
        "WatchItem", back_populates="tenant", cascade="all, delete-orphan"
    )
    credentials: Mapped[list["RetailerCredential"]] = relationship(
        "RetailerCredential", back_populates="tenant", cascade="all, delete-orphan"
    )


class WatchItem(Base):
    """A product a tenant wants monitored (and optionally bought)."""

    __tablename__ = "watch_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    retailer: Mapped[str] = mapped_column(String(32), nullable=False)
    product_url: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(String(16), default=WatchMode.NOTIFY.value, nullable=False)
    poll_interval_seconds: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    price_ceiling: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Written only by the stock-check cycle
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_status: Mapped[str] = mapped_column(
        String(16), default=StockStatus.UNKNOWN.value, nullable=False
    )
    last_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="watch_items")
    attempts: Mapped[list["PurchaseAttempt"]] = relationship(
        "PurchaseAttempt", back_populates="watch_item", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_watch_items_due", "active", "last_checked_at"),
    )


class PurchaseAttempt(Base):
    """One execution of the purchase flow for a watch item."""

    __tablename__ = "purchase_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    watch_item_id: Mapped[int] = mapped_column(ForeignKey("watch_items.id"), nullable=False)
    status: Mapped[str] = mapped_column(
        String(24), default=AttemptStatus.DETECTED.value, nullable=False
    )
    order_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    total_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    steps_completed: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    path: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # playbook | agent
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    watch_item: Mapped["WatchItem"] = relationship("WatchItem", back_populates="attempts")
    events: Mapped[list["PurchaseAttemptEvent"]] = relationship(
        "PurchaseAttemptEvent",
        back_populates="attempt",
        cascade="all, delete-orphan",
        order_by="PurchaseAttemptEvent.id",
    )


class PurchaseAttemptEvent(Base):
    """Append-only audit row for each attempt status transition."""

    __tablename__ = "purchase_attempt_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attempt_id: Mapped[int] = mapped_column(ForeignKey("purchase_attempts.id"), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(24), nullable=True)
    to_status: Mapped[str] = mapped_column(String(24), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    attempt: Mapped["PurchaseAttempt"] = relationship("PurchaseAttempt", back_populates="events")


class ActivityLog(Base):
    """Append-only per-tenant activity feed."""

    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    watch_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("watch_items.id"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    details: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_activity_log_tenant_created", "tenant_id", "created_at"),
    )


class Playbook(Base):
    """Recorded, replayable checkout steps for a retailer."""

    __tablename__ = "playbooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    retailer: Mapped[str] = mapped_column(String(32), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    steps: Mapped[list] = mapped_column(JSONType, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fail_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("retailer", "version", name="uq_playbook_retailer_version"),
    )


class RetailerCredential(Base):
    """Encrypted storefront login for a tenant."""

    __tablename__ = "retailer_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    retailer: Mapped[str] = mapped_column(String(32), nullable=False)
    username: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    password: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    verification_code: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="credentials")

    __table_args__ = (
        UniqueConstraint("tenant_id", "retailer", name="uq_credential_tenant_retailer"),
    )

    def __repr__(self) -> str:
        return f"<RetailerCredential tenant={self.tenant_id} retailer={self.retailer} ***>"
