from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────────────


class ExtractionStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one_time"


class ExtractionErrorKind(str, enum.Enum):
    NAVIGATION_TIMEOUT = "navigation_timeout"
    NO_PRICING_MARKUP_FOUND = "no_pricing_markup_found"
    BLOCKED_OR_CHALLENGED = "blocked_or_challenged"


class ChangeStatus(str, enum.Enum):
    NO_HISTORY = "no_history"
    NO_CHANGE = "no_change"
    CHANGED = "changed"


class ChangeDirection(str, enum.Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


# ── Pydantic schemas ──────────────────────────────────────────────────────────


class PlanRef(BaseModel):
    id: uuid.UUID
    name: str


class ProductTarget(BaseModel):
    """A product as the pipeline sees it, detached from the ORM session."""

    id: uuid.UUID
    slug: str
    name: str
    source_url: str
    plans: list[PlanRef] = Field(default_factory=list)


class RawPlanSnapshot(BaseModel):
    plan_name: str
    price: float = Field(ge=0)
    currency: str = "USD"
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    features: list[str] = Field(default_factory=list)
    source: str = "web_scraping"


class RawSnapshot(BaseModel):
    product_slug: str
    url: str
    plans: list[RawPlanSnapshot]
    extracted_at: datetime = Field(default_factory=utcnow)


class ExtractionFailure(BaseModel):
    product_slug: str
    kind: ExtractionErrorKind
    message: str


class Snapshot(BaseModel):
    id: uuid.UUID
    plan_id: uuid.UUID
    price: float
    currency: str
    features: list[str]
    source: str
    observed_at: datetime


class ChangeResult(BaseModel):
    plan_id: uuid.UUID
    status: ChangeStatus
    old_price: float | None = None
    new_price: float | None = None
    delta_abs: float | None = None
    delta_percent: float | None = None
    direction: ChangeDirection | None = None

    @property
    def changed(self) -> bool:
        return self.status == ChangeStatus.CHANGED


class NotificationPreferences(BaseModel):
    email: bool = True
    slack_webhook_url: str | None = None


class ProductRunResult(BaseModel):
    success: bool
    message: str
    extracted_price: float | None = None
    attempts: int = 0


class CycleTriggerResult(BaseModel):
    already_running: bool


class CycleStatus(BaseModel):
    is_running: bool


# ── SQLAlchemy ORM ─────────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notification_preferences: Mapped[dict] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def get_preferences(self) -> NotificationPreferences:
        return NotificationPreferences.model_validate(self.notification_preferences or {})


class Product(Base):
    __tablename__ = "saas_products"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="Other")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    extraction_status: Mapped[ExtractionStatus] = mapped_column(
        Enum(
            ExtractionStatus,
            name="extraction_status_enum",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=ExtractionStatus.PENDING,
    )
    last_extracted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    plans: Mapped[list["Plan"]] = relationship(
        back_populates="product", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_saas_products_last_extracted_at", "last_extracted_at"),
    )

    def to_target(self) -> ProductTarget:
        return ProductTarget(
            id=self.id,
            slug=self.slug,
            name=self.name,
            source_url=self.source_url,
            plans=[
                PlanRef(id=plan.id, name=plan.name)
                for plan in sorted(self.plans, key=lambda p: p.name)
                if plan.is_active
            ],
        )


class Plan(Base):
    __tablename__ = "pricing_plans"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("saas_products.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BillingCycle.MONTHLY.value
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    features: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    current_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    product: Mapped["Product"] = relationship(back_populates="plans")

    __table_args__ = (
        Index("ix_pricing_plans_product_id", "product_id"),
    )


class PriceSnapshotRow(Base):
    __tablename__ = "price_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_plans.id", ondelete="CASCADE"), nullable=False
    )
    price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    features: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_price_snapshots_plan_id_observed_at", "plan_id", "observed_at"),
    )

    def to_schema(self) -> Snapshot:
        return Snapshot(
            id=self.id,
            plan_id=self.plan_id,
            price=self.price,
            currency=self.currency,
            features=list(self.features or []),
            source=self.source,
            observed_at=as_utc(self.observed_at),
        )


class TrackedSubscription(Base):
    __tablename__ = "tracked_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_plans.id", ondelete="CASCADE"), nullable=False
    )
    alert_on_increase: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    alert_on_decrease: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    alert_on_new_features: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    target_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "plan_id", name="uq_tracked_subscriptions_user_plan"),
        Index("ix_tracked_subscriptions_plan_id", "plan_id"),
    )


class PriceAlert(Base):
    __tablename__ = "price_alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_plans.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    old_price: Mapped[float] = mapped_column(Float, nullable=False)
    new_price: Mapped[float] = mapped_column(Float, nullable=False)
    delta_abs: Mapped[float] = mapped_column(Float, nullable=False)
    delta_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_price_alerts_user_id", "user_id"),
    )
