"""Repository classes providing CRUD access to the CreditDesk state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()``.

Range predicates (due dates, expiry cut-offs) are always evaluated in SQL.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.state.tables import (
    CreditTransactionTable,
    PaymentTable,
    SubscriptionTable,
    TaxCredentialTable,
    UserTable,
)

logger = logging.getLogger(__name__)

# Payment states from which a row may still move to ``paid``.
_PAYABLE_STATUSES: tuple[str, ...] = ("pending", "failed")


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# UserRepository
# ---------------------------------------------------------------------------


class UserRepository:
    """Access to ``users`` rows and their denormalized billing columns."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        email: str,
        *,
        role: str = "user",
        password_hash: str = "",
        user_id: str | None = None,
    ) -> UserTable:
        row = UserTable(email=email, role=role, password_hash=password_hash)
        if user_id is not None:
            row.id = user_id
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_id(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: str) -> int | None:
        """Return the cached credit balance, or ``None`` for an unknown user."""
        result = await self._session.execute(select(UserTable.credit_balance).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def get_balance_and_tier(self, user_id: str) -> tuple[int, str] | None:
        stmt = select(UserTable.credit_balance, UserTable.subscription_tier).where(UserTable.id == user_id)
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        return (row[0], row[1]) if row is not None else None

    async def apply_balance_delta(self, user_id: str, amount: int) -> int | None:
        """Atomically add *amount* to the user's balance.

        A single conditional ``UPDATE ... RETURNING`` both checks and applies
        the delta, so concurrent writers can never lose an update.  For
        debits the row only matches while the result stays non-negative.

        Returns
        -------
        int | None
            The new balance, or ``None`` if no row matched (unknown user or
            a debit larger than the balance).
        """
        stmt = (
            update(UserTable)
            .where(UserTable.id == user_id)
            .values(credit_balance=UserTable.credit_balance + amount, updated_at=_utcnow())
            .returning(UserTable.credit_balance)
        )
        if amount < 0:
            stmt = stmt.where(UserTable.credit_balance + amount >= 0)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, *, page: int = 1, limit: int = 50) -> tuple[list[UserTable], int]:
        """Return one page of users, newest first, plus the total count."""
        count_result = await self._session.execute(select(func.count()).select_from(UserTable))
        total = int(count_result.scalar_one())
        stmt = (
            select(UserTable)
            .order_by(UserTable.created_at.desc(), UserTable.id)
            .limit(limit)
            .offset((max(page, 1) - 1) * limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def set_subscription_tier(self, user_id: str, tier: str) -> None:
        stmt = update(UserTable).where(UserTable.id == user_id).values(subscription_tier=tier, updated_at=_utcnow())
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# CreditTransactionRepository
# ---------------------------------------------------------------------------


class CreditTransactionRepository:
    """Append-only access to ``credit_transactions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(
        self,
        *,
        user_id: str,
        amount: int,
        balance_after: int,
        type: str,
        description: str,
        related_id: str | None = None,
        remaining: int | None = None,
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransactionTable:
        row = CreditTransactionTable(
            user_id=user_id,
            amount=amount,
            balance_after=balance_after,
            type=type,
            description=description,
            related_id=related_id,
            remaining=remaining,
            expires_at=expires_at,
            metadata_=metadata,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        type: str | None = None,
    ) -> list[CreditTransactionTable]:
        """Return a reverse-chronological page of the user's ledger."""
        stmt = select(CreditTransactionTable).where(CreditTransactionTable.user_id == user_id)
        if type is not None:
            stmt = stmt.where(CreditTransactionTable.type == type)
        stmt = (
            stmt.order_by(CreditTransactionTable.created_at.desc(), CreditTransactionTable.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_user(self, user_id: str, *, type: str | None = None) -> int:
        stmt = select(func.count()).select_from(CreditTransactionTable).where(CreditTransactionTable.user_id == user_id)
        if type is not None:
            stmt = stmt.where(CreditTransactionTable.type == type)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def unspent_grants(self, user_id: str) -> list[CreditTransactionTable]:
        """Unswept subscription grants with credits left, soonest-expiring first.

        Rows are locked on PostgreSQL; the caller has already taken the user
        row lock through the balance update, so this never waits on another
        ledger writer for the same user.
        """
        stmt = (
            select(CreditTransactionTable)
            .where(
                CreditTransactionTable.user_id == user_id,
                CreditTransactionTable.type == "subscription_grant",
                CreditTransactionTable.expired_by.is_(None),
                CreditTransactionTable.remaining > 0,
            )
            .order_by(CreditTransactionTable.expires_at.asc(), CreditTransactionTable.created_at.asc())
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_expired_grants(self, now: datetime) -> list[CreditTransactionTable]:
        """Subscription grants whose expiry has passed and that are not yet swept."""
        stmt = (
            select(CreditTransactionTable)
            .where(
                CreditTransactionTable.type == "subscription_grant",
                CreditTransactionTable.expires_at.is_not(None),
                CreditTransactionTable.expires_at <= now,
                CreditTransactionTable.expired_by.is_(None),
            )
            .order_by(CreditTransactionTable.expires_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_grant_expired(self, grant_id: str, expiration_id: str) -> None:
        stmt = (
            update(CreditTransactionTable)
            .where(CreditTransactionTable.id == grant_id)
            .values(expired_by=expiration_id, remaining=0)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """CRUD operations for the ``subscriptions`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, row: SubscriptionTable) -> SubscriptionTable:
        self._session.add(row)
        await self._session.flush()
        return row

    async def delete(self, row: SubscriptionTable) -> None:
        await self._session.delete(row)
        await self._session.flush()

    async def get_by_user_id(self, user_id: str) -> SubscriptionTable | None:
        result = await self._session.execute(select(SubscriptionTable).where(SubscriptionTable.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_by_id(self, subscription_id: str) -> SubscriptionTable | None:
        result = await self._session.execute(select(SubscriptionTable).where(SubscriptionTable.id == subscription_id))
        return result.scalar_one_or_none()

    async def find_due_for_renewal(self, now: datetime) -> list[SubscriptionTable]:
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.status == "active",
                SubscriptionTable.next_billing_date.is_not(None),
                SubscriptionTable.next_billing_date <= now,
            )
            .order_by(SubscriptionTable.next_billing_date.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_expired(self, now: datetime) -> list[SubscriptionTable]:
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.status.in_(("suspended", "cancelled")),
                SubscriptionTable.billing_cycle_end < now,
            )
            .order_by(SubscriptionTable.billing_cycle_end.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def flush(self) -> None:
        await self._session.flush()


# ---------------------------------------------------------------------------
# PaymentRepository
# ---------------------------------------------------------------------------


class PaymentRepository:
    """CRUD operations and guarded state transitions for ``payments``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        user_id: str,
        order_id: str,
        order_name: str,
        amount: int,
        payment_type: str,
        related_id: str | None = None,
        status: str = "pending",
        tid: str | None = None,
        pay_method: str | None = None,
        paid_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentTable:
        row = PaymentTable(
            user_id=user_id,
            order_id=order_id,
            order_name=order_name,
            amount=amount,
            payment_type=payment_type,
            related_id=related_id,
            status=status,
            tid=tid,
            pay_method=pay_method,
            paid_at=paid_at,
            metadata_=metadata,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_order_id(self, order_id: str) -> PaymentTable | None:
        result = await self._session.execute(select(PaymentTable).where(PaymentTable.order_id == order_id))
        return result.scalar_one_or_none()

    async def get_by_id(self, payment_id: str) -> PaymentTable | None:
        result = await self._session.execute(select(PaymentTable).where(PaymentTable.id == payment_id))
        return result.scalar_one_or_none()

    async def get_by_tid(self, tid: str) -> PaymentTable | None:
        result = await self._session.execute(select(PaymentTable).where(PaymentTable.tid == tid))
        return result.scalars().first()

    async def list_for_user(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        status: str | None = None,
    ) -> tuple[list[PaymentTable], int]:
        """Return one page of the user's payments plus the total count."""
        filters = [PaymentTable.user_id == user_id]
        if status is not None:
            filters.append(PaymentTable.status == status)

        count_result = await self._session.execute(select(func.count()).select_from(PaymentTable).where(*filters))
        total = int(count_result.scalar_one())

        stmt = (
            select(PaymentTable)
            .where(*filters)
            .order_by(PaymentTable.created_at.desc())
            .limit(limit)
            .offset((max(page, 1) - 1) * limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def mark_paid(
        self,
        payment_id: str,
        *,
        tid: str,
        pay_method: str | None,
        card_name: str | None = None,
        card_num: str | None = None,
        billing_key: str | None = None,
    ) -> bool:
        """Move a payment to ``paid`` exactly once.

        The status predicate makes the transition a compare-and-set: of two
        racing confirmations only one sees ``rowcount == 1``.
        """
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.id == payment_id, PaymentTable.status.in_(_PAYABLE_STATUSES))
            .values(
                status="paid",
                tid=tid,
                pay_method=pay_method,
                card_name=card_name,
                card_num=card_num,
                billing_key=billing_key,
                paid_at=_utcnow(),
                fail_code=None,
                fail_message=None,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_failed(self, payment_id: str, *, fail_code: str, fail_message: str | None) -> bool:
        """Record a failure unless the payment already settled."""
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.id == payment_id, PaymentTable.status.in_(_PAYABLE_STATUSES))
            .values(status="failed", fail_code=fail_code, fail_message=fail_message, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_cancelled(self, payment_id: str) -> bool:
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.id == payment_id, PaymentTable.status == "paid")
            .values(status="cancelled", cancelled_at=_utcnow(), updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def refresh(self, row: PaymentTable) -> PaymentTable:
        await self._session.refresh(row)
        return row


# ---------------------------------------------------------------------------
# TaxCredentialRepository
# ---------------------------------------------------------------------------


class TaxCredentialRepository:
    """CRUD operations for the ``tax_credentials`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, row: TaxCredentialTable) -> TaxCredentialTable:
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_id(self, credential_id: str) -> TaxCredentialTable | None:
        result = await self._session.execute(select(TaxCredentialTable).where(TaxCredentialTable.id == credential_id))
        return result.scalar_one_or_none()

    async def get_for_user_and_client(self, user_id: str, client_id: str) -> TaxCredentialTable | None:
        stmt = select(TaxCredentialTable).where(
            TaxCredentialTable.user_id == user_id,
            TaxCredentialTable.client_id == client_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_by_client_id(self, client_id: str) -> TaxCredentialTable | None:
        """Most recently created active credential for a business ID."""
        stmt = (
            select(TaxCredentialTable)
            .where(TaxCredentialTable.client_id == client_id, TaxCredentialTable.is_active.is_(True))
            .order_by(TaxCredentialTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_for_user(self, user_id: str) -> list[TaxCredentialTable]:
        stmt = (
            select(TaxCredentialTable)
            .where(TaxCredentialTable.user_id == user_id, TaxCredentialTable.is_active.is_(True))
            .order_by(TaxCredentialTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        user_id: str | None = None,
        client_id: str | None = None,
        cert_type: str | None = None,
        is_active: bool | None = None,
        expired: bool | None = None,
        now: datetime | None = None,
    ) -> tuple[list[TaxCredentialTable], int]:
        """Return one page of credentials across all users plus the total count.

        ``expired=True`` keeps rows whose ``expires_at`` has passed;
        ``expired=False`` keeps rows with no expiry or a future one.
        """
        filters = []
        if user_id is not None:
            filters.append(TaxCredentialTable.user_id == user_id)
        if client_id is not None:
            filters.append(TaxCredentialTable.client_id == client_id)
        if cert_type is not None:
            filters.append(TaxCredentialTable.cert_type == cert_type)
        if is_active is not None:
            filters.append(TaxCredentialTable.is_active.is_(is_active))
        if expired is not None:
            cutoff = now or _utcnow()
            if expired:
                filters.append(TaxCredentialTable.expires_at <= cutoff)
            else:
                filters.append(
                    (TaxCredentialTable.expires_at.is_(None)) | (TaxCredentialTable.expires_at > cutoff)
                )

        count_result = await self._session.execute(
            select(func.count()).select_from(TaxCredentialTable).where(*filters)
        )
        total = int(count_result.scalar_one())

        stmt = (
            select(TaxCredentialTable)
            .where(*filters)
            .order_by(TaxCredentialTable.created_at.desc(), TaxCredentialTable.id)
            .limit(limit)
            .offset((max(page, 1) - 1) * limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def stats(self, now: datetime, expiring_before: datetime) -> dict[str, Any]:
        """Aggregate counts over all credentials, computed in SQL."""
        active = TaxCredentialTable.is_active.is_(True)
        has_expiry = TaxCredentialTable.expires_at.is_not(None)
        stmt = select(
            func.count(),
            func.count().filter(active),
            func.count().filter(active, has_expiry, TaxCredentialTable.expires_at <= now),
            func.count().filter(
                active,
                has_expiry,
                TaxCredentialTable.expires_at > now,
                TaxCredentialTable.expires_at <= expiring_before,
            ),
            func.count(func.distinct(TaxCredentialTable.user_id)),
        ).select_from(TaxCredentialTable)
        total, active_count, expired_count, expiring_count, owners = (await self._session.execute(stmt)).one()

        by_type_result = await self._session.execute(
            select(TaxCredentialTable.cert_type, func.count())
            .where(active)
            .group_by(TaxCredentialTable.cert_type)
        )
        return {
            "total": int(total),
            "active": int(active_count),
            "inactive": int(total) - int(active_count),
            "expired": int(expired_count),
            "expiring_soon": int(expiring_count),
            "users": int(owners),
            "by_type": {cert_type: int(count) for cert_type, count in by_type_result.all()},
        }

    async def delete(self, credential_id: str) -> bool:
        """Delete a credential. Returns True if it existed."""
        stmt = delete(TaxCredentialTable).where(TaxCredentialTable.id == credential_id)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def flush(self) -> None:
        await self._session.flush()
