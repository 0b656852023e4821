"""
fraud risk scoring for referrals and payouts.

score is additive over independent checks and capped at 100:

    self_referral_fingerprint   +40
    self_referral_ip            +40
    self_referral_account       +60
    click_velocity              +25
    refund_history              +50   (chargeback_history wins if both)
    chargeback_history          +70
    shared_device               +45
    bot_traffic                 +30
    suspicious_timing           +20   (one device, more than 5 clicks in the window)

policy:
    0-30    approve
    31-70   review  (commission still pays, flagged for audit)
    71-100  block   (commission persisted as held)

the scorer is a pure function over a RiskSignals snapshot. gathering the
snapshot touches storage; assess() wraps both and fails open.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from models import CHARGEBACK, REFUND, Member


logger = logging.getLogger(__name__)

RISK_POINTS = {
    "self_referral_fingerprint": 40,
    "self_referral_ip": 40,
    "self_referral_account": 60,
    "click_velocity": 25,
    "refund_history": 50,
    "chargeback_history": 70,
    "shared_device": 45,
    "bot_traffic": 30,
    "suspicious_timing": 20,
}

MAX_SCORE = 100
REVIEW_THRESHOLD = 30  # score above this is reviewed
BLOCK_THRESHOLD = 70   # score above this is blocked

APPROVE = "approve"
REVIEW = "review"
BLOCK = "block"

BOT_PATTERNS = ("bot", "crawler", "spider", "scraper", "curl", "wget")
DEVICE_CLICK_THRESHOLD = 5


@dataclass
class RiskSignals:
    fingerprint_match: bool = False
    ip_match: bool = False
    account_match: bool = False
    clicks_in_window: int = 0
    velocity_threshold: int = 100
    refund_count: int = 0
    chargeback_count: int = 0
    shared_device_members: int = 0
    bot_user_agent: bool = False
    device_clicks_in_window: int = 0


@dataclass
class FraudAssessment:
    score: int
    decision: str
    reasons: List[str] = field(default_factory=list)
    failed_open: bool = False

    @property
    def should_block(self) -> bool:
        return self.decision == BLOCK

    @property
    def should_review(self) -> bool:
        return self.decision == REVIEW


def decision_for(score: int) -> str:
    if score > BLOCK_THRESHOLD:
        return BLOCK
    if score > REVIEW_THRESHOLD:
        return REVIEW
    return APPROVE


def score_signals(signals: RiskSignals) -> FraudAssessment:
    reasons: List[str] = []

    if signals.fingerprint_match:
        reasons.append("self_referral_fingerprint")
    if signals.ip_match:
        reasons.append("self_referral_ip")
    if signals.account_match:
        reasons.append("self_referral_account")
    if signals.clicks_in_window > signals.velocity_threshold:
        reasons.append("click_velocity")

    # severity: a chargeback outranks a refund, they don't stack
    if signals.chargeback_count > 0:
        reasons.append("chargeback_history")
    elif signals.refund_count > 0:
        reasons.append("refund_history")

    if signals.shared_device_members > 0:
        reasons.append("shared_device")
    if signals.bot_user_agent:
        reasons.append("bot_traffic")
    if signals.device_clicks_in_window > DEVICE_CLICK_THRESHOLD:
        reasons.append("suspicious_timing")

    score = min(MAX_SCORE, sum(RISK_POINTS[r] for r in reasons))
    return FraudAssessment(score=score, decision=decision_for(score), reasons=reasons)


def is_bot_user_agent(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    lowered = user_agent.lower()
    return any(pattern in lowered for pattern in BOT_PATTERNS)


def collect_signals(
    tx,
    referrer: Member,
    referee: Member,
    now: datetime,
    user_agent: Optional[str] = None,
    velocity_window_minutes: int = 60,
    velocity_threshold: int = 100,
) -> RiskSignals:
    """gather the activity windows the scorer needs for one referrer/referee pair."""
    history = tx.list_commissions(referee_id=referee.id)

    since = now - timedelta(minutes=velocity_window_minutes)

    shared = []
    device_clicks = 0
    if referee.signup_fingerprint:
        shared = tx.members_sharing_fingerprint(
            referee.signup_fingerprint,
            exclude_ids=[referee.id, referrer.id],
        )
        device_clicks = tx.count_clicks_since(
            referrer.referral_code, since, fingerprint=referee.signup_fingerprint
        )

    return RiskSignals(
        fingerprint_match=bool(
            referee.signup_fingerprint
            and referee.signup_fingerprint == referrer.signup_fingerprint
        ),
        ip_match=bool(
            referee.signup_ip_hash and referee.signup_ip_hash == referrer.signup_ip_hash
        ),
        account_match=referee.user_id == referrer.user_id,
        clicks_in_window=tx.count_clicks_since(referrer.referral_code, since),
        velocity_threshold=velocity_threshold,
        refund_count=sum(1 for c in history if c.reversal_reason == REFUND),
        chargeback_count=sum(1 for c in history if c.reversal_reason == CHARGEBACK),
        shared_device_members=len(shared),
        bot_user_agent=is_bot_user_agent(user_agent),
        device_clicks_in_window=device_clicks,
    )


def assess(
    tx,
    referrer: Member,
    referee: Member,
    now: datetime,
    user_agent: Optional[str] = None,
    velocity_window_minutes: int = 60,
    velocity_threshold: int = 100,
) -> FraudAssessment:
    """
    score a referrer/referee pair. never raises: an engine failure is
    logged loudly and approves, so a bug here cannot block a payout.
    """
    try:
        # a storage error in here must not poison the surrounding transaction
        with tx.savepoint():
            signals = collect_signals(
                tx,
                referrer,
                referee,
                now,
                user_agent=user_agent,
                velocity_window_minutes=velocity_window_minutes,
                velocity_threshold=velocity_threshold,
            )
        assessment = score_signals(signals)
    except Exception:
        logger.exception(
            "fraud engine failed for referrer=%s referee=%s, failing open",
            referrer.id,
            referee.id,
        )
        return FraudAssessment(score=0, decision=APPROVE, reasons=["engine_error"], failed_open=True)

    if assessment.decision != APPROVE:
        logger.warning(
            "fraud score %s (%s) for referrer=%s referee=%s: %s",
            assessment.score,
            assessment.decision,
            referrer.id,
            referee.id,
            ", ".join(assessment.reasons),
        )
    return assessment
