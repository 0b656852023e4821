import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import fraud_engine
from commission_engine import compute_split, validate_sale_amount
from config import Settings, get_settings
from errors import IdempotencyHit, NotFoundError, ValidationError
from fraud_engine import FraudAssessment
from models import (
    CHARGEBACK,
    FAILED,
    HELD,
    PAID,
    PENDING,
    REFUND,
    Commission,
    month_start,
)


logger = logging.getLogger(__name__)

# ingest outcomes
APPLIED = "applied"
DUPLICATE = "duplicate"
ORGANIC_SALE = "organic"
# status-event outcome
UPDATED = "updated"

REVERSAL_REASONS = (REFUND, CHARGEBACK)


@dataclass
class LedgerResult:
    status: str
    commission: Optional[Commission] = None
    fraud: Optional[FraudAssessment] = None


def _notification_payload(commission: Commission) -> Dict[str, Any]:
    return {
        "commission_id": commission.id,
        "external_payment_id": commission.external_payment_id,
        "member_id": commission.member_id,
        "creator_id": commission.creator_id,
        "member_share": str(commission.member_share),
        "status": commission.status,
    }


def _require_commission(tx, external_payment_id: str) -> Commission:
    commission = tx.get_commission_by_payment(external_payment_id)
    if commission is None:
        raise NotFoundError(f"No commission for payment {external_payment_id}")
    return commission


# ---------
# ingest
# ---------

def ingest(
    store,
    event,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> LedgerResult:
    """
    turn one payment event into at most one commission.

    event: anything with external_payment_id, membership_id, company_id
    and sale_amount attributes (see webhook.PaymentEvent).
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)

    try:
        with store.transaction() as tx:
            return _ingest_in_tx(tx, event, now, settings)
    except IdempotencyHit as hit:
        logger.info("payment %s already ingested, returning existing commission", event.external_payment_id)
        return LedgerResult(status=DUPLICATE, commission=hit.commission)


def _ingest_in_tx(tx, event, now: datetime, settings: Settings) -> LedgerResult:
    # 1) idempotency fast path; a retry gets the stored commission back
    # even if the amount would no longer validate
    existing = tx.get_commission_by_payment(event.external_payment_id)
    if existing is not None:
        raise IdempotencyHit(existing)

    sale_amount = validate_sale_amount(event.sale_amount, settings.max_sale_amount)

    # 2) payer and tenant
    payer = tx.get_member_by_membership(event.membership_id)
    if payer is None:
        raise NotFoundError(f"No member found with membership_id={event.membership_id}")
    creator = tx.get_creator_by_company(event.company_id)
    if creator is None:
        raise NotFoundError(f"No creator found with company_id={event.company_id}")
    if payer.creator_id != creator.id:
        raise ValidationError(
            f"Member {payer.id} does not belong to company {event.company_id}"
        )

    # 3) earner comes from the conversion-time link only
    if not payer.referred_by:
        logger.info("payment %s from organic member %s, no commission", event.external_payment_id, payer.id)
        return LedgerResult(status=ORGANIC_SALE)
    referrer = tx.get_member_by_code(payer.referred_by)
    if referrer is None:
        raise NotFoundError(f"No member found with referral_code={payer.referred_by}")

    # 4) split
    shares = compute_split(sale_amount)

    # 5) fraud decides pending / flagged / held
    click = tx.get_converting_click(payer.id)
    assessment = fraud_engine.assess(
        tx,
        referrer,
        payer,
        now,
        user_agent=click.user_agent if click else None,
        velocity_window_minutes=settings.click_velocity_window_minutes,
        velocity_threshold=settings.click_velocity_threshold,
    )
    status = HELD if assessment.should_block else PENDING

    # 6) insert-or-return-existing on the unique payment id
    commission, created = tx.insert_commission_if_absent(
        external_payment_id=event.external_payment_id,
        sale_amount=sale_amount,
        member_share=shares["member_share"],
        creator_share=shares["creator_share"],
        platform_share=shares["platform_share"],
        status=status,
        member_id=referrer.id,
        referee_id=payer.id,
        creator_id=creator.id,
        created_at=now,
        fraud_score=assessment.score,
        fraud_reasons=list(assessment.reasons),
        flagged_for_review=assessment.should_review,
    )
    if not created:
        # lost the race to a concurrent delivery of the same event
        raise IdempotencyHit(commission)

    tx.enqueue_notification("commission.created", _notification_payload(commission), now)

    if status == HELD:
        logger.warning(
            "commission %s for payment %s held, fraud score %s",
            commission.id,
            commission.external_payment_id,
            assessment.score,
        )
    else:
        logger.info(
            "commission %s created for payment %s: member=%s creator=%s platform=%s",
            commission.id,
            commission.external_payment_id,
            commission.member_share,
            commission.creator_share,
            commission.platform_share,
        )
    return LedgerResult(status=APPLIED, commission=commission, fraud=assessment)


# ---------
# status transitions
# ---------

def _credit_paid(tx, commission: Commission, now: datetime) -> None:
    # paid_at is now, so it always falls in the current month
    tx.add_member_earnings(commission.member_id, commission.member_share, include_monthly=True)
    tx.add_creator_revenue(commission.creator_id, commission.creator_share, include_monthly=True)
    tx.enqueue_notification("commission.paid", _notification_payload(commission), now)


def mark_paid(store, external_payment_id: str, now: Optional[datetime] = None) -> Commission:
    """
    pending -> paid on an explicit payment-succeeded signal.
    on a held commission the signal is only remembered; already-paid is a no-op.
    """
    now = now or datetime.now(timezone.utc)

    with store.transaction() as tx:
        commission = _require_commission(tx, external_payment_id)

        if commission.status == HELD:
            tx.set_payment_confirmed(commission.id)
            logger.info("payment confirmed for held commission %s", commission.id)
            return tx.get_commission(commission.id)

        if commission.status != PENDING:
            logger.info(
                "commission %s is %s, ignoring payment-succeeded",
                commission.id,
                commission.status,
            )
            return commission

        updated = tx.transition_commission(commission.id, [PENDING], PAID, paid_at=now)
        if updated is None:
            return tx.get_commission(commission.id)

        _credit_paid(tx, updated, now)

    logger.info("commission %s paid, member %s credited %s", updated.id, updated.member_id, updated.member_share)
    return updated


def mark_failed(store, external_payment_id: str, now: Optional[datetime] = None) -> Commission:
    """pending/held -> failed. nothing was credited yet so nothing is reversed."""
    with store.transaction() as tx:
        commission = _require_commission(tx, external_payment_id)
        updated = tx.transition_commission(commission.id, [PENDING, HELD], FAILED)
        if updated is None:
            logger.info(
                "commission %s is %s, ignoring payment-failed",
                commission.id,
                commission.status,
            )
            return commission

    logger.info("commission %s failed", updated.id)
    return updated


def reverse(
    store,
    external_payment_id: str,
    reason: str,
    now: Optional[datetime] = None,
) -> Commission:
    """
    refund or chargeback.

    - paid -> failed with the reason, subtracting the shares from the cached
      member earnings and creator revenue (floored at zero)
    - pending/held -> failed with the reason, nothing to subtract
    - already failed is a no-op
    """
    if reason not in REVERSAL_REASONS:
        raise ValidationError(f"Unknown reversal reason: {reason!r}")
    now = now or datetime.now(timezone.utc)

    with store.transaction() as tx:
        commission = _require_commission(tx, external_payment_id)

        if commission.status in (PENDING, HELD):
            updated = tx.transition_commission(
                commission.id, [PENDING, HELD], FAILED, reversal_reason=reason
            )
            logger.info("unpaid commission %s reversed (%s)", commission.id, reason)
            return updated or tx.get_commission(commission.id)

        updated = tx.transition_commission(commission.id, [PAID], FAILED, reversal_reason=reason)
        if updated is None:
            logger.info("commission %s is %s, ignoring %s", commission.id, commission.status, reason)
            return commission

        # monthly fields only hold this commission if it was paid this month
        this_month = updated.paid_at is not None and updated.paid_at >= month_start(now)

        if tx.add_member_earnings(updated.member_id, -updated.member_share, include_monthly=this_month):
            logger.warning(
                "member %s earnings hit zero floor reversing commission %s; ledger and cache disagree upstream",
                updated.member_id,
                updated.id,
            )
        if tx.add_creator_revenue(updated.creator_id, -updated.creator_share, include_monthly=this_month):
            logger.warning(
                "creator %s revenue hit zero floor reversing commission %s; ledger and cache disagree upstream",
                updated.creator_id,
                updated.id,
            )

        tx.enqueue_notification("commission.reversed", _notification_payload(updated), now)

    logger.warning("commission %s reversed (%s)", updated.id, reason)
    return updated


def release_held(store, commission_id: int, now: Optional[datetime] = None) -> Commission:
    """
    admin release of a held commission.
    held -> paid when the payment already succeeded, otherwise held -> pending.
    """
    now = now or datetime.now(timezone.utc)

    with store.transaction() as tx:
        commission = tx.get_commission(commission_id)
        if commission is None:
            raise NotFoundError(f"Commission {commission_id} not found")
        if commission.status != HELD:
            raise ValidationError(f"Commission {commission_id} is {commission.status}, not held")

        if commission.payment_confirmed:
            updated = tx.transition_commission(commission.id, [HELD], PAID, paid_at=now)
            if updated is None:
                raise ValidationError(f"Commission {commission_id} changed concurrently")
            _credit_paid(tx, updated, now)
        else:
            updated = tx.transition_commission(commission.id, [HELD], PENDING)
            if updated is None:
                raise ValidationError(f"Commission {commission_id} changed concurrently")

    logger.info("held commission %s released as %s", updated.id, updated.status)
    return updated


# ---------
# webhook dispatch
# ---------

def apply_payment_event(
    store,
    event,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> LedgerResult:
    """route one decoded payment event to the ledger operation it stands for."""
    event_type = event.event_type

    if event_type == "payment.pending":
        return ingest(store, event, now=now, settings=settings)

    if event_type == "payment.succeeded":
        result = ingest(store, event, now=now, settings=settings)
        if result.commission is None:
            return result
        commission = mark_paid(store, event.external_payment_id, now=now)
        return LedgerResult(status=result.status, commission=commission, fraud=result.fraud)

    if event_type == "payment.failed":
        return LedgerResult(status=UPDATED, commission=mark_failed(store, event.external_payment_id, now=now))

    if event_type == "payment.refunded":
        return LedgerResult(status=UPDATED, commission=reverse(store, event.external_payment_id, REFUND, now=now))

    if event_type == "payment.chargeback":
        return LedgerResult(status=UPDATED, commission=reverse(store, event.external_payment_id, CHARGEBACK, now=now))

    raise ValidationError(f"Unsupported event type: {event_type}")
