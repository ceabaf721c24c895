# classes/entities.py
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_now,
        onupdate=_now,
    )


class Profile(Base, TimestampMixin):
    """
    One row per Supabase auth user; id is the auth user id.
    """
    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)

    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))

    subscription_plan: Mapped[str | None] = mapped_column(String(32))
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255))
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def has_paid(self) -> bool:
        return bool(self.is_paid and self.is_active)


class Design(Base, TimestampMixin):
    __tablename__ = "designs"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_uuid)
    # auth user id; the profile row may not exist yet
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    prompt: Mapped[str | None] = mapped_column(Text)
    code: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_designs_user_id_name"),
        Index("ix_designs_user_id_created_at", "user_id", "created_at"),
    )


class AiLearningSession(Base, TimestampMixin):
    """
    One generation request, later enriched with the user's rating and corrections.
    """
    __tablename__ = "ai_learning_sessions"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False, index=True)

    user_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    system_prompt: Mapped[str | None] = mapped_column(Text)
    generated_code: Mapped[str] = mapped_column(Text, nullable=False)
    final_code: Mapped[str | None] = mapped_column(Text)
    was_modified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    design_category: Mapped[str | None] = mapped_column(String(32))
    complexity_level: Mapped[str | None] = mapped_column(String(32))
    model_name: Mapped[str | None] = mapped_column(String(64))
    generation_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))

    user_feedback: Mapped[int | None] = mapped_column(Integer)
    feedback_text: Mapped[str | None] = mapped_column(Text)

    @property
    def has_corrections(self) -> bool:
        return bool(self.final_code) and self.final_code != self.generated_code


class AiFeedback(Base, TimestampMixin):
    __tablename__ = "ai_feedback"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    session_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("ai_learning_sessions.id", ondelete="SET NULL"),
    )
    template: Mapped[str | None] = mapped_column(String(64))
    design_id: Mapped[str | None] = mapped_column(String(64))
    design_prompt: Mapped[str | None] = mapped_column(Text)
    generated_code: Mapped[str | None] = mapped_column(Text)
    quality_score: Mapped[int] = mapped_column(Integer, nullable=False)
    quality_label: Mapped[str | None] = mapped_column(String(32))
    feedback_text: Mapped[str | None] = mapped_column(Text)

    # pending, accepted, rejected
    review_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    reviewed_by: Mapped[str | None] = mapped_column(String(320))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    generation_time_ms: Mapped[int | None] = mapped_column(Integer)
    tokens_used: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (
        Index("ix_ai_feedback_review_status", "review_status"),
    )


class AiCorrection(Base, TimestampMixin):
    __tablename__ = "ai_corrections"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("ai_learning_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    original_code: Mapped[str] = mapped_column(Text, nullable=False)
    corrected_code: Mapped[str] = mapped_column(Text, nullable=False)
    correction_type: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)


class PromoCode(Base, TimestampMixin):
    __tablename__ = "promo_codes"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TrainingExample(Base, TimestampMixin):
    """
    Admin-approved generations that feed the knowledge base.
    """
    __tablename__ = "ai_training_examples"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_uuid)
    source_feedback_id: Mapped[UUID | None] = mapped_column(String(36), unique=True)
    template: Mapped[str | None] = mapped_column(String(64))
    input_prompt: Mapped[str | None] = mapped_column(Text)
    generated_code: Mapped[str | None] = mapped_column(Text)
    quality_score: Mapped[int | None] = mapped_column(Integer)
    quality_label: Mapped[str | None] = mapped_column(String(16))
    pattern_name: Mapped[str | None] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_by: Mapped[str | None] = mapped_column(String(36))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class AdminAudit(Base):
    __tablename__ = "admin_audit"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_uuid)
    actor_email: Mapped[str] = mapped_column(String(320), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class AdminEmail(Base):
    # lower-cased address; rows grant admin alongside ADMIN_EMAILS and profiles.is_admin
    __tablename__ = "admin_emails"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class StripeEvent(Base):
    """
    Webhook events already applied; the Stripe event id is the idempotency key.
    """
    __tablename__ = "stripe_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    # PROCESSED, FAILED
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PROCESSED")
    error_message: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
