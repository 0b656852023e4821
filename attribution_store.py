import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from errors import NotFoundError, ValidationError
from models import AttributionClick
from referral_codes import is_valid_referral_code


logger = logging.getLogger(__name__)

ATTRIBUTION_WINDOW_DAYS = 30


def record_click(
    tx,
    referral_code: str,
    fingerprint: str,
    ip_hash: str,
    user_agent: Optional[str],
    now: Optional[datetime] = None,
    window_days: int = ATTRIBUTION_WINDOW_DAYS,
) -> AttributionClick:
    """
    record one referral-link click.

    rules:
      - code must look like PREFIX-SUFFIX (ValidationError otherwise)
      - code must belong to a member (NotFoundError otherwise)
      - every click is a new row; dedup happens at conversion time
    """
    if not is_valid_referral_code(referral_code):
        raise ValidationError(f"Malformed referral code: {referral_code!r}")

    referrer = tx.get_member_by_code(referral_code)
    if referrer is None:
        raise NotFoundError(f"No member found with referral_code={referral_code}")

    now = now or datetime.now(timezone.utc)
    click = tx.insert_click(
        referral_code=referral_code,
        referrer_id=referrer.id,
        fingerprint=fingerprint,
        ip_hash=ip_hash,
        user_agent=user_agent,
        created_at=now,
        expires_at=now + timedelta(days=window_days),
    )
    logger.info("click %s recorded for %s", click.id, referral_code)
    return click


def find_active_attribution(
    tx,
    fingerprint: Optional[str],
    ip_hash: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[AttributionClick]:
    """
    newest unexpired, unconverted click for this visitor.
    a fingerprint match beats an ip-only match; None means organic.
    """
    now = now or datetime.now(timezone.utc)

    if fingerprint:
        click = tx.find_active_click(now, fingerprint=fingerprint)
        if click is not None:
            return click

    if ip_hash:
        return tx.find_active_click(now, ip_hash=ip_hash)

    return None


def find_active_click_for_code(
    tx,
    referral_code: str,
    now: Optional[datetime] = None,
) -> Optional[AttributionClick]:
    """newest unexpired, unconverted click carrying this code (the cookie path)."""
    if not is_valid_referral_code(referral_code):
        return None
    now = now or datetime.now(timezone.utc)
    return tx.find_active_click(now, referral_code=referral_code)
