"""Credit ledger engine.

Every balance change is one call to :meth:`CreditLedger.create`, which
applies a signed delta to ``users.credit_balance`` with a single conditional
``UPDATE ... RETURNING`` and then appends an immutable
``credit_transactions`` row whose ``balance_after`` is the value that
statement returned.  Because the check and the write are one statement, two
concurrent requests for the same user cannot both spend the same credits,
and the newest row's ``balance_after`` always equals the cached balance.

The ledger never commits; it runs inside the caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.errors import InsufficientCredits, InvalidInput, UserNotFound
from ledger_engine.state.repository import CreditTransactionRepository, UserRepository
from ledger_engine.state.tables import CreditTransactionTable
from ledger_engine.tiers import FREE_TIER

logger = logging.getLogger(__name__)

# ``expired_by`` marker for grants that had nothing left to expire.
GRANT_CONSUMED = "consumed"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    SUBSCRIPTION_GRANT = "subscription_grant"
    ADMIN_GRANT = "admin_grant"
    EXPIRATION = "expiration"
    REFUND = "refund"


@dataclass
class BatchSummary:
    """Outcome of a batch job: per-item failures never abort the batch."""

    total: int = 0
    success: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@dataclass
class ExpirySummary(BatchSummary):
    expired_credits: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["expired_credits"] = self.expired_credits
        return payload


def _require_positive(amount: int, what: str) -> None:
    if amount <= 0:
        raise InvalidInput(f"{what} amount must be a positive number of credits")


class CreditLedger:
    """Grant, deduct and expire credits for users.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._users = UserRepository(session)
        self._transactions = CreditTransactionRepository(session)

    # -- Primitive -----------------------------------------------------------

    async def create(
        self,
        user_id: str,
        amount: int,
        type: TransactionType | str,
        description: str,
        related_id: str | None = None,
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransactionTable:
        """Apply a signed credit delta and record it in the ledger.

        Raises
        ------
        UserNotFound
            The user does not exist.
        InsufficientCredits
            A debit would take the balance below zero.  Nothing is written.
        """
        if amount == 0:
            raise InvalidInput("Credit amount must be non-zero")
        tx_type = TransactionType(type)

        new_balance = await self._users.apply_balance_delta(user_id, amount)
        if new_balance is None:
            current = await self._users.get_balance(user_id)
            if current is None:
                raise UserNotFound(f"User '{user_id}' not found")
            logger.warning(
                "Refused %s of %d credits for user=%s (balance=%d)",
                tx_type.value,
                amount,
                user_id,
                current,
            )
            raise InsufficientCredits(required=-amount, current=current)

        if amount < 0 and tx_type != TransactionType.EXPIRATION:
            await self._draw_down_grants(user_id, -amount, new_balance, tx_type)

        row = await self._transactions.insert(
            user_id=user_id,
            amount=amount,
            balance_after=new_balance,
            type=tx_type.value,
            description=description,
            related_id=related_id,
            remaining=amount if tx_type == TransactionType.SUBSCRIPTION_GRANT else None,
            expires_at=expires_at,
            metadata=metadata,
        )
        logger.info(
            "Ledger %s user=%s amount=%+d balance_after=%d",
            tx_type.value,
            user_id,
            amount,
            new_balance,
        )
        return row

    async def _draw_down_grants(
        self,
        user_id: str,
        debit: int,
        new_balance: int,
        tx_type: TransactionType,
    ) -> None:
        """Charge a debit against the user's unspent subscription grants.

        Spending draws plan credits before purchased ones.  A refund takes
        back purchased credits, so it only touches grants when the purchased
        part of the balance is too small to cover it.  Either way the unspent
        grant total never exceeds the balance.
        """
        grants = await self._transactions.unspent_grants(user_id)
        unspent = sum(g.remaining or 0 for g in grants)
        if tx_type == TransactionType.REFUND:
            take = max(unspent - new_balance, 0)
        else:
            take = min(debit, unspent)

        for grant in grants:
            if take <= 0:
                break
            used = min(grant.remaining or 0, take)
            grant.remaining = (grant.remaining or 0) - used
            take -= used
        if grants:
            await self._session.flush()

    # -- Derived operations --------------------------------------------------

    async def deduct(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_id: str | None = None,
    ) -> CreditTransactionTable:
        """Consume *amount* credits for a metered action."""
        _require_positive(amount, "Deduction")
        return await self.create(user_id, -amount, TransactionType.USAGE, description, related_id)

    async def charge(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_id: str | None = None,
    ) -> CreditTransactionTable:
        """Credit purchased credits; these never expire."""
        _require_positive(amount, "Purchase")
        return await self.create(user_id, amount, TransactionType.PURCHASE, description, related_id)

    async def grant_subscription(
        self,
        user_id: str,
        amount: int,
        description: str,
        expires_at: datetime,
        related_id: str | None = None,
    ) -> CreditTransactionTable:
        _require_positive(amount, "Subscription grant")
        return await self.create(
            user_id,
            amount,
            TransactionType.SUBSCRIPTION_GRANT,
            description,
            related_id,
            expires_at=expires_at,
        )

    async def admin_grant(
        self,
        user_id: str,
        amount: int,
        description: str,
        admin_id: str,
    ) -> CreditTransactionTable:
        """Operator adjustment; a negative *amount* deducts."""
        if amount == 0:
            raise InvalidInput("Admin grant amount must be non-zero")
        return await self.create(
            user_id,
            amount,
            TransactionType.ADMIN_GRANT,
            description,
            related_id=admin_id,
            metadata={"granted_by": admin_id},
        )

    async def refund(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_id: str,
    ) -> CreditTransactionTable:
        """Take back *amount* purchased credits after a payment is cancelled."""
        _require_positive(amount, "Refund")
        return await self.create(user_id, -amount, TransactionType.REFUND, description, related_id)

    # -- Reads ---------------------------------------------------------------

    async def get_balance(self, user_id: str) -> dict[str, Any]:
        """Return ``{"balance", "tier"}``; unknown users read as an empty free account."""
        snapshot = await self._users.get_balance_and_tier(user_id)
        if snapshot is None:
            return {"balance": 0, "tier": FREE_TIER}
        balance, tier = snapshot
        return {"balance": balance, "tier": tier}

    async def find_by_user_id(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        type: TransactionType | str | None = None,
    ) -> list[CreditTransactionTable]:
        tx_type = TransactionType(type).value if type is not None else None
        return await self._transactions.list_for_user(user_id, limit=limit, offset=offset, type=tx_type)

    async def count_by_user_id(self, user_id: str, *, type: TransactionType | str | None = None) -> int:
        tx_type = TransactionType(type).value if type is not None else None
        return await self._transactions.count_for_user(user_id, type=tx_type)

    async def find_expired(self, now: datetime | None = None) -> list[CreditTransactionTable]:
        """Subscription grants past their expiry that the sweep has not handled."""
        return await self._transactions.find_expired_grants(now or datetime.now(UTC))

    # -- Expiry sweep --------------------------------------------------------

    async def expire_credits(self, now: datetime | None = None) -> ExpirySummary:
        """Write compensating ``expiration`` entries for every expired grant.

        Only the unspent part of a grant (its ``remaining`` counter) is
        removed; purchased credits are never touched.  Each grant is
        processed inside its own SAVEPOINT and then stamped, so a failure
        rolls back only that grant and a re-run never expires the same grant
        twice.
        """
        grants = await self.find_expired(now)
        summary = ExpirySummary(total=len(grants))

        for grant in grants:
            grant_id, user_id, amount = grant.id, grant.user_id, grant.remaining or 0
            try:
                async with self._session.begin_nested():
                    summary.expired_credits += await self._expire_grant(grant_id, user_id, amount)
                summary.success += 1
            except Exception as exc:
                summary.failed += 1
                summary.errors.append({"transaction_id": grant_id, "user_id": user_id, "error": str(exc)})
                logger.error(
                    "Credit expiry failed for grant=%s user=%s: %s",
                    grant_id,
                    user_id,
                    exc,
                    exc_info=True,
                )

        logger.info(
            "Credit expiry sweep: %d grants, %d expired credits, %d failures",
            summary.total,
            summary.expired_credits,
            summary.failed,
        )
        return summary

    async def _expire_grant(self, grant_id: str, user_id: str, unspent: int) -> int:
        balance = await self._users.get_balance(user_id) or 0
        remainder = min(unspent, balance)
        marker = GRANT_CONSUMED
        if remainder > 0:
            row = await self.create(
                user_id,
                -remainder,
                TransactionType.EXPIRATION,
                "Expired subscription credits",
                related_id=grant_id,
            )
            marker = row.id
        await self._transactions.mark_grant_expired(grant_id, marker)
        return remainder
