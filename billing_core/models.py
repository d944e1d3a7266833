"""SQLAlchemy models for the billing ledger."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum(cls: type[enum.Enum]) -> Enum:
    # Store "active", not "ACTIVE": the partial index below matches on values.
    return Enum(cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32)


class AccountTier(str, enum.Enum):
    TRIAL = "trial"
    METERED = "metered"
    SUBSCRIPTION = "subscription"
    CANCELLED = "cancelled"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PlanTier(str, enum.Enum):
    METERED = "metered"
    SUBSCRIPTION = "subscription"


class Account(Base):
    """Billing-relevant state of a product user. Id comes from the auth provider."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tier: Mapped[AccountTier] = mapped_column(
        _enum(AccountTier), default=AccountTier.TRIAL, nullable=False
    )

    # Usage tracking (per billing period for the subscription tier, lifetime for trial)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    external_customer_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    trial_started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    # Relationships
    subscriptions: Mapped[list["Subscription"]] = relationship(
        back_populates="account", lazy="noload", cascade="all, delete-orphan"
    )
    usage_units: Mapped[list["UsageUnit"]] = relationship(
        back_populates="account", lazy="noload", cascade="all, delete-orphan"
    )


class Subscription(Base):
    """One external billing agreement."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_subscription_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    external_subscription_item_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_variant_id: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[SubscriptionStatus] = mapped_column(_enum(SubscriptionStatus), nullable=False)
    tier: Mapped[PlanTier] = mapped_column(_enum(PlanTier), nullable=False)

    renews_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    billing_anchor_day: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    account: Mapped["Account"] = relationship(back_populates="subscriptions")

    __table_args__ = (
        # At most one active subscription per account
        Index(
            "uq_subscription_account_active",
            "account_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class ProcessedEvent(Base):
    """Idempotency ledger entry. Append-only."""

    __tablename__ = "processed_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_key: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    event_name: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class UsageUnit(Base):
    """One completed unit of paid work."""

    __tablename__ = "usage_units"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    mode: Mapped[str] = mapped_column(String(50), nullable=False)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_reported: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )

    account: Mapped["Account"] = relationship(back_populates="usage_units")
