"""Payment orchestration against the NicePay gateway.

Every checkout follows the same shape: a ``pending`` payment row is written
before the browser is redirected, the gateway confirms it (browser return
or deposit webhook), the row moves to ``paid`` through a single conditional
update, and exactly one side effect is dispatched:

* ``one_time_credit`` credits the purchased pack to the ledger,
* ``subscription`` starts a subscription with the issued billing key,
* ``tier_upgrade`` applies a paid mid-cycle upgrade.

Renewal charges (``subscription_renewal``) never pass through here; the
billing batch records them directly.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from enum import Enum
from typing import Any

from ledger_engine.errors import (
    AlreadyPaid,
    AlreadyProcessed,
    AmountMismatch,
    Forbidden,
    InvalidInput,
    InvalidPaymentMethod,
    InvalidTier,
    PaymentNotFound,
    SubscriptionNotFound,
    UpstreamFailure,
)
from ledger_engine.ledger import CreditLedger
from ledger_engine.state.repository import PaymentRepository
from ledger_engine.state.tables import PaymentTable
from ledger_engine.subscriptions import SubscriptionEngine, SubscriptionStatus
from ledger_engine.tiers import CREDIT_PACKS, TEST_TIER, TierSpec, get_tier
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.services.gateway_client import NicepayClient

logger = logging.getLogger(__name__)

GATEWAY_SUCCESS = "0000"
_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class PaymentType(str, Enum):
    ONE_TIME_CREDIT = "one_time_credit"
    SUBSCRIPTION = "subscription"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    TIER_UPGRADE = "tier_upgrade"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


def generate_order_id(prefix: str) -> str:
    """Return ``{prefix}_{epoch_ms}_{9 random chars}``."""
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def payment_to_dict(payment: PaymentTable) -> dict[str, Any]:
    """Client-facing view of a payment row (no billing key)."""
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "order_name": payment.order_name,
        "amount": payment.amount,
        "payment_type": payment.payment_type,
        "related_id": payment.related_id,
        "status": payment.status,
        "tid": payment.tid,
        "pay_method": payment.pay_method,
        "card_name": payment.card_name,
        "card_num": payment.card_num,
        "fail_code": payment.fail_code,
        "fail_message": payment.fail_message,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "cancelled_at": payment.cancelled_at.isoformat() if payment.cancelled_at else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


class PaymentService:
    """Prepare, confirm and cancel gateway payments.

    Parameters
    ----------
    session:
        Active database session for the request.
    settings:
        API settings (return URL, test-tier flag).
    gateway:
        NicePay client used for every outbound call.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        gateway: NicepayClient,
    ) -> None:
        self._session = session
        self._settings = settings
        self._gateway = gateway
        self._payments = PaymentRepository(session)
        self._ledger = CreditLedger(session)
        self._subscriptions = SubscriptionEngine(session, self._ledger)

    # -- Prepare -------------------------------------------------------------

    async def prepare_credit_payment(self, user_id: str, pack_id: str) -> dict[str, Any]:
        """Open a checkout for a credit pack.  The price comes from the catalogue."""
        pack = CREDIT_PACKS.get(pack_id)
        if pack is None:
            raise InvalidInput(f"Unknown credit pack '{pack_id}'", code="INVALID_PACK")
        return await self._prepare(
            user_id,
            order_id=generate_order_id("CREDIT"),
            order_name=f"{pack.total_credits} credits",
            amount=pack.price,
            payment_type=PaymentType.ONE_TIME_CREDIT,
            related_id=pack.id,
            metadata={"credits": pack.total_credits},
        )

    async def prepare_subscription_payment(self, user_id: str, tier: str) -> dict[str, Any]:
        spec = self._purchasable_tier(tier)
        existing = await self._subscriptions.get_by_user_id(user_id)
        if existing is not None and existing.status in (
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.CANCELLED.value,
        ):
            raise InvalidInput(
                "You already have a subscription; change plan instead",
                code="SUBSCRIPTION_EXISTS",
            )
        return await self._prepare(
            user_id,
            order_id=generate_order_id(f"SUB_{spec.key.upper()}"),
            order_name=f"{spec.name} plan subscription",
            amount=spec.price or 0,
            payment_type=PaymentType.SUBSCRIPTION,
            related_id=spec.key,
            metadata={"tier": spec.key},
        )

    async def prepare_tier_upgrade_payment(self, user_id: str, tier: str) -> dict[str, Any]:
        """Open a checkout for the prorated difference of a mid-cycle upgrade."""
        spec = self._purchasable_tier(tier)
        subscription = await self._subscriptions.get_by_user_id(user_id)
        if subscription is None:
            raise SubscriptionNotFound("No subscription to upgrade")
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidInput("Only active subscriptions can be upgraded")
        quote = self._subscriptions.quote_change(subscription, spec.key)
        if not quote.is_upgrade or quote.additional_charge <= 0:
            raise InvalidInput(f"Changing to '{spec.key}' is not a paid upgrade", code="NOT_AN_UPGRADE")
        return await self._prepare(
            user_id,
            order_id=generate_order_id(f"UPG_{spec.key.upper()}"),
            order_name=f"Upgrade to {spec.name} plan",
            amount=quote.additional_charge,
            payment_type=PaymentType.TIER_UPGRADE,
            related_id=spec.key,
            metadata={"tier": spec.key, "from_tier": subscription.tier, "quote": quote.to_dict()},
        )

    def _purchasable_tier(self, tier: str) -> TierSpec:
        spec = get_tier(tier)
        if spec.key == TEST_TIER and not self._settings.test_tier_enabled:
            raise InvalidTier(f"Unknown subscription tier '{tier}'")
        if not spec.is_purchasable:
            if spec.is_custom or spec.price is None:
                raise InvalidInput("Custom plans require contacting sales", code="CUSTOM_PLAN")
            raise InvalidInput("The free plan does not require payment", code="FREE_PLAN")
        return spec

    async def _prepare(
        self,
        user_id: str,
        *,
        order_id: str,
        order_name: str,
        amount: int,
        payment_type: PaymentType,
        related_id: str,
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        payment = await self._payments.create(
            user_id=user_id,
            order_id=order_id,
            order_name=order_name,
            amount=amount,
            payment_type=payment_type.value,
            related_id=related_id,
            metadata=metadata,
        )
        result = await self._gateway.prepare_payment(
            order_id=order_id,
            amount=amount,
            goods_name=order_name,
            return_url=self._settings.payment_return_url,
            mall_user_id=user_id,
            direct_pay_method="card",
        )
        if not result.success:
            await self._record_failure(payment, result.code or "PREPARE_FAILED", result.error)
            raise UpstreamFailure(result.error, code=result.code)

        logger.info("Payment prepared: order=%s type=%s amount=%d", order_id, payment_type.value, amount)
        return {
            "order_id": order_id,
            "amount": amount,
            "order_name": order_name,
            "client_token": result.data.get("clientToken"),
            "client_id": self._settings.nicepay_client_id,
            "return_url": self._settings.payment_return_url,
        }

    # -- Confirm -------------------------------------------------------------

    async def approve_payment(self, user_id: str, order_id: str, tid: str, amount: int) -> dict[str, Any]:
        """Confirm a card payment after the browser returns from checkout.

        Raises
        ------
        PaymentNotFound, Forbidden
            Unknown order, or an order owned by someone else.
        AlreadyPaid
            The order was already confirmed (including by a concurrent call).
        AmountMismatch
            *amount* differs from the amount stored at prepare time.
        UpstreamFailure
            The gateway refused the approval.
        """
        payment = await self._get_payment(order_id)
        if payment.user_id != user_id:
            logger.warning("User %s attempted to approve order %s owned by %s", user_id, order_id, payment.user_id)
            raise Forbidden("This payment belongs to another user")
        if payment.status == PaymentStatus.PAID.value:
            raise AlreadyPaid("Payment has already been processed")
        if payment.status not in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
            raise AlreadyProcessed(f"Payment is {payment.status}")
        if payment.amount != amount:
            await self._record_failure(payment, "AMOUNT_MISMATCH", f"expected {payment.amount}, received {amount}")
            raise AmountMismatch(expected=payment.amount, received=amount)

        result = await self._gateway.approve_payment(tid, amount)
        if not result.success:
            await self._record_failure(payment, result.code or "APPROVE_FAILED", result.error)
            raise UpstreamFailure(result.error, code=result.code)

        data = result.data
        card = data.get("card") or {}
        paid = await self._payments.mark_paid(
            payment.id,
            tid=data.get("tid") or tid,
            pay_method=data.get("payMethod") or "card",
            card_name=card.get("cardName"),
            card_num=card.get("cardNum"),
            billing_key=data.get("billingKey"),
        )
        if not paid:
            logger.warning("Concurrent approval lost the paid transition: order=%s", order_id)
            raise AlreadyPaid("Payment has already been processed")
        await self._payments.refresh(payment)

        outcome = await self._dispatch(payment)
        logger.info("Payment approved: order=%s type=%s", order_id, payment.payment_type)
        return {"payment": payment_to_dict(payment), **outcome}

    async def handle_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Settle a payment from the gateway's server-to-server notification.

        Used for deposit-style methods (virtual accounts).  Card checkouts
        for subscriptions and upgrades must go through :meth:`approve_payment`
        because only that path carries a billing key and an owner check.
        """
        order_id = str(payload.get("orderId") or "")
        tid = str(payload.get("tid") or "")
        result_code = str(payload.get("resultCode") or "")
        payment = await self._get_payment(order_id)

        if payment.payment_type in (PaymentType.SUBSCRIPTION.value, PaymentType.TIER_UPGRADE.value):
            if payment.status == PaymentStatus.PENDING.value:
                await self._record_failure(
                    payment,
                    "INVALID_PAYMENT_METHOD",
                    "Subscriptions cannot be paid by deposit",
                )
            logger.warning("Webhook rejected for %s payment order=%s", payment.payment_type, order_id)
            raise InvalidPaymentMethod("Subscriptions can only be paid by card")

        if payment.status == PaymentStatus.PAID.value:
            logger.info("Webhook for already-paid order=%s acknowledged", order_id)
            return {"status": "already_paid"}

        if result_code != GATEWAY_SUCCESS:
            await self._payments.mark_failed(
                payment.id,
                fail_code=result_code or "UNKNOWN",
                fail_message=payload.get("resultMsg"),
            )
            logger.info("Webhook reported failure for order=%s code=%s", order_id, result_code)
            return {"status": "failed"}

        amount = _as_int(payload.get("amount"))
        if amount != payment.amount:
            await self._record_failure(payment, "AMOUNT_MISMATCH", f"expected {payment.amount}, received {amount}")
            raise AmountMismatch(expected=payment.amount, received=amount)

        if not tid:
            raise InvalidInput("Notification carries no transaction id", code="MISSING_TID")
        settled = await self._payments.get_by_tid(tid)
        if settled is not None and settled.id != payment.id:
            logger.warning("Webhook tid=%s already settled order=%s, rejecting order=%s", tid, settled.order_id, order_id)
            raise AlreadyProcessed("Transaction already settled another order", code="TID_REUSED")

        # The notification is unsigned; the gateway's own record is authoritative.
        lookup = await self._gateway.get_payment(tid)
        if not lookup.success:
            logger.warning("Could not verify webhook tid=%s with gateway: %s", tid, lookup.error)
            raise UpstreamFailure(lookup.error, code=lookup.code)
        record = lookup.data
        if (
            record.get("status") != "paid"
            or str(record.get("orderId") or "") != order_id
            or _as_int(record.get("amount")) != payment.amount
        ):
            logger.warning(
                "Webhook for order=%s does not match gateway record tid=%s (status=%s amount=%s)",
                order_id,
                tid,
                record.get("status"),
                record.get("amount"),
            )
            raise InvalidInput("Gateway record does not confirm this payment", code="UNVERIFIED_PAYMENT")

        paid = await self._payments.mark_paid(
            payment.id,
            tid=tid,
            pay_method=payload.get("payMethod") or "vbank",
        )
        if not paid:
            return {"status": "already_paid"}
        await self._payments.refresh(payment)

        await self._dispatch(payment)
        logger.info("Webhook settled order=%s", order_id)
        return {"status": "paid"}

    async def _dispatch(self, payment: PaymentTable) -> dict[str, Any]:
        metadata = payment.metadata_ or {}
        if payment.payment_type == PaymentType.ONE_TIME_CREDIT.value:
            credits = int(metadata.get("credits") or CREDIT_PACKS[payment.related_id or ""].total_credits)
            entry = await self._ledger.charge(
                payment.user_id,
                credits,
                f"Credit purchase: {payment.order_name}",
                related_id=payment.id,
            )
            return {"credits_added": credits, "balance": entry.balance_after}

        tier = str(metadata.get("tier") or payment.related_id)
        if payment.payment_type == PaymentType.SUBSCRIPTION.value:
            if not payment.billing_key:
                logger.warning("Subscription order=%s approved without a billing key", payment.order_id)
            subscription = await self._subscriptions.create(payment.user_id, tier, billing_key=payment.billing_key)
            return {"subscription_id": subscription.id, "tier": subscription.tier}

        if payment.payment_type == PaymentType.TIER_UPGRADE.value:
            quote = await self._subscriptions.change_tier(payment.user_id, tier, payment=payment)
            return {"tier": quote.new_tier, "credits_added": quote.prorated_credits}

        raise InvalidPaymentMethod(f"Unsupported payment type '{payment.payment_type}'")

    # -- Cancel --------------------------------------------------------------

    async def cancel_payment(
        self,
        user_id: str,
        order_id: str,
        reason: str,
        *,
        is_admin: bool = False,
    ) -> dict[str, Any]:
        """Cancel a paid payment at the gateway.

        Purchased credits are taken back first; if they have already been
        spent the cancel is refused with ``InsufficientCredits``.  A gateway
        failure raises and the request transaction rolls the refund back.
        """
        payment = await self._get_payment(order_id)
        if payment.user_id != user_id and not is_admin:
            raise Forbidden("This payment belongs to another user")
        if payment.status != PaymentStatus.PAID.value or not payment.tid:
            raise InvalidInput(f"Only paid payments can be cancelled (status: {payment.status})")

        if payment.payment_type == PaymentType.ONE_TIME_CREDIT.value:
            credits = int((payment.metadata_ or {}).get("credits") or 0)
            if credits > 0:
                await self._ledger.refund(
                    payment.user_id,
                    credits,
                    f"Refund for cancelled order {order_id}",
                    related_id=payment.id,
                )

        result = await self._gateway.cancel_payment(payment.tid, payment.amount, reason)
        if not result.success:
            raise UpstreamFailure(result.error, code=result.code)

        if not await self._payments.mark_cancelled(payment.id):
            raise AlreadyProcessed("Payment was modified concurrently")
        await self._payments.refresh(payment)
        logger.info("Payment cancelled: order=%s by=%s reason=%s", order_id, user_id, reason)
        return payment_to_dict(payment)

    # -- History -------------------------------------------------------------

    async def get_payment_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        status: str | None = None,
    ) -> dict[str, Any]:
        rows, total = await self._payments.list_for_user(user_id, page=page, limit=limit, status=status)
        return {
            "payments": [payment_to_dict(row) for row in rows],
            "total_count": total,
            "page": page,
            "limit": limit,
        }

    # -- Helpers -------------------------------------------------------------

    async def _get_payment(self, order_id: str) -> PaymentTable:
        payment = await self._payments.get_by_order_id(order_id)
        if payment is None:
            raise PaymentNotFound(f"Payment '{order_id}' not found")
        return payment

    async def _record_failure(self, payment: PaymentTable, code: str, message: str | None) -> None:
        """Mark *payment* failed and commit so the record survives the error response."""
        await self._payments.mark_failed(payment.id, fail_code=code, fail_message=message)
        await self._session.commit()
        logger.warning("Payment failed: order=%s code=%s message=%s", payment.order_id, code, message)
