"""SQLAlchemy 2.0 ORM table definitions for the CreditDesk state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by migrations, the repository layer and the test fixtures.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator):
    """``DateTime(timezone=True)`` that always round-trips UTC-aware values.

    PostgreSQL ``timestamptz`` already returns aware datetimes.  SQLite has
    no timezone support and hands back naive values, which cannot be
    compared against ``datetime.now(UTC)``; those are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all CreditDesk tables."""


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Platform user accounts.

    ``credit_balance`` is a denormalized cache of the user's ledger sum and
    ``subscription_tier`` mirrors the tier of the current subscription.  Both
    columns are written only by the credit ledger and the subscription
    engine.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="user")
    credit_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subscription_tier: Mapped[str] = mapped_column(String(64), nullable=False, default="free")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_users_credit_balance_non_negative"),
        Index("ix_users_email", "email"),
    )


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------


class CreditTransactionTable(Base):
    """Append-only credit ledger.

    ``balance_after`` is the user's balance immediately after this entry was
    applied.  Rows are never updated except on a ``subscription_grant``:
    ``remaining`` counts the part of the grant not yet spent (debits draw
    it down, soonest-expiring grant first) and ``expired_by`` is stamped
    once the expiry sweep has compensated it.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    related_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expired_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", _JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_after"),
        CheckConstraint("remaining IS NULL OR remaining >= 0", name="ck_credit_transactions_remaining"),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
        Index("ix_credit_transactions_type_expires", "type", "expires_at"),
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Current subscription per user (one row per user, not historized)."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    tier: Mapped[str] = mapped_column(String(64), nullable=False)
    pending_tier: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    billing_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_cycle_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    billing_cycle_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    monthly_credit_quota: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", _JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
        Index("ix_subscriptions_status_cycle_end", "status", "billing_cycle_end"),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentTable(Base):
    """One row per payment-gateway order attempt.

    ``order_id`` is the externally visible idempotency key.  A row moves
    from ``pending`` to exactly one terminal state and is never revisited
    once ``paid`` (except by an explicit cancellation).
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    order_name: Mapped[str] = mapped_column(String(256), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_type: Mapped[str] = mapped_column(String(32), nullable=False)
    related_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tid: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pay_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    card_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    card_num: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    billing_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    fail_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fail_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", _JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payments_user_created", "user_id", "created_at"),
        Index("ix_payments_tid", "tid"),
    )


# ---------------------------------------------------------------------------
# Tax credentials
# ---------------------------------------------------------------------------


class TaxCredentialTable(Base):
    """Encrypted tax-authority certificate material.

    The certificate, private key and certificate password are bundled as
    JSON and encrypted once with AES-256-GCM; ``encrypted_payload``, ``iv``
    and ``auth_tag`` are base64 strings.
    """

    __tablename__ = "tax_credentials"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_id: Mapped[str] = mapped_column(String(10), nullable=False)
    encrypted_payload: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(32), nullable=False)
    auth_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    cert_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    cert_type: Mapped[str] = mapped_column(String(16), nullable=False, default="business")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="uq_tax_credentials_user_client"),
        Index("ix_tax_credentials_client_active", "client_id", "is_active"),
    )
