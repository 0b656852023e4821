import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

import fraud_engine
from attribution_store import find_active_attribution, find_active_click_for_code
from config import Settings, get_settings
from errors import AlreadyConvertedError, NotFoundError, ValidationError
from fraud_engine import FraudAssessment
from identity_hasher import VisitorIdentity
from models import AttributionClick, Member
from referral_codes import generate_unique_referral_code


logger = logging.getLogger(__name__)


@dataclass
class SignupResult:
    member: Member
    created: bool
    matched_via: Optional[str] = None  # "cookie" | "fingerprint" | "ip"
    click_id: Optional[int] = None
    referrer_id: Optional[int] = None
    fraud: Optional[FraudAssessment] = None

    @property
    def origin(self) -> str:
        return self.member.member_origin


def claim_click(tx, click: AttributionClick, member: Member, now: datetime) -> None:
    """
    single-shot transition of a click to converted.
    the update only lands if the click is still unconverted, so of two
    racing signups exactly one wins.
    """
    if not tx.mark_click_converted(click.id, member.id, now):
        raise AlreadyConvertedError(click.id)


def _match_click(
    tx,
    identity: Optional[VisitorIdentity],
    cookie_code: Optional[str],
    now: datetime,
) -> Tuple[Optional[AttributionClick], Optional[str]]:
    # 1) explicit cookie wins while its click is still live
    if cookie_code:
        click = find_active_click_for_code(tx, cookie_code, now)
        if click is not None:
            return click, "cookie"
        logger.info("ref cookie %s present but attribution expired or converted", cookie_code)

    # 2) fall back to fingerprint / ip
    if identity is None:
        return None, None
    click = find_active_attribution(tx, identity.fingerprint, identity.ip_hash, now)
    if click is None:
        return None, None
    via = "fingerprint" if click.fingerprint == identity.fingerprint else "ip"
    return click, via


def register_member(
    store,
    creator_id: int,
    user_id: str,
    membership_id: str,
    name: str,
    identity: Optional[VisitorIdentity] = None,
    cookie_code: Optional[str] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> SignupResult:
    """
    create a member at account creation and resolve who referred them.

    - a membership that is already registered is returned unchanged
    - an unexpired ref cookie beats fingerprint matching
    - otherwise the newest active click for the visitor identity is used
    - no match, or a lost race for the click, means organic
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)

    with store.transaction() as tx:
        creator = tx.get_creator(creator_id)
        if creator is None:
            raise NotFoundError(f"Creator {creator_id} not found")

        existing = tx.get_member_by_membership(membership_id)
        if existing is not None:
            return SignupResult(member=existing, created=False)

        code = generate_unique_referral_code(name, tx.referral_code_exists)
        try:
            # savepoint so a unique violation leaves the transaction usable
            with tx.savepoint():
                member = tx.insert_member(
                    creator_id=creator_id,
                    user_id=user_id,
                    membership_id=membership_id,
                    referral_code=code,
                    fingerprint=identity.fingerprint if identity else None,
                    ip_hash=identity.ip_hash if identity else None,
                    now=now,
                )
        except ValueError as e:
            # a concurrent signup for the same membership got there first
            winner = tx.get_member_by_membership(membership_id)
            if winner is not None:
                logger.info("membership %s registered concurrently, returning existing member", membership_id)
                return SignupResult(member=winner, created=False)
            raise ValidationError(str(e))

        click, via = _match_click(tx, identity, cookie_code, now)
        if click is None:
            logger.info("member %s signed up organic", member.id)
            return SignupResult(member=member, created=True)

        referrer = tx.get_member(click.referrer_id)
        if referrer is None or referrer.creator_id != creator_id:
            # attribution never crosses tenants
            logger.info(
                "click %s belongs to another tenant, member %s stays organic",
                click.id,
                member.id,
            )
            return SignupResult(member=member, created=True)

        try:
            claim_click(tx, click, member, now)
        except AlreadyConvertedError:
            logger.warning(
                "[SECURITY] click %s was already converted; member %s falls back to organic",
                click.id,
                member.id,
            )
            return SignupResult(member=member, created=True)

        tx.set_member_referred(member.id, click.referral_code)
        tx.increment_referral_counts(referrer.id)
        tx.increment_creator_referrals(creator_id)
        member = tx.get_member(member.id)

        assessment = fraud_engine.assess(
            tx,
            referrer,
            member,
            now,
            user_agent=click.user_agent,
            velocity_window_minutes=settings.click_velocity_window_minutes,
            velocity_threshold=settings.click_velocity_threshold,
        )

        tx.enqueue_notification(
            "member.referred",
            {
                "referrer_id": referrer.id,
                "member_id": member.id,
                "referral_code": click.referral_code,
                "risk_score": assessment.score,
            },
            now,
        )

    logger.info(
        "member %s referred by %s via %s (click %s)",
        member.id,
        member.referred_by,
        via,
        click.id,
    )
    return SignupResult(
        member=member,
        created=True,
        matched_via=via,
        click_id=click.id,
        referrer_id=referrer.id,
        fraud=assessment,
    )
