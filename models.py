from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional


ZERO = Decimal("0.00")

# commission status
PENDING = "pending"
PAID = "paid"
HELD = "held"
FAILED = "failed"
COMMISSION_STATUSES = (PENDING, PAID, HELD, FAILED)

# member origin
ORGANIC = "organic"
REFERRED = "referred"

# reversal reasons
REFUND = "refund"
CHARGEBACK = "chargeback"


@dataclass
class Creator:
    id: int
    company_id: str
    name: str
    product_url: str
    total_revenue: Decimal = ZERO
    monthly_revenue: Decimal = ZERO
    total_referrals: int = 0


@dataclass
class Member:
    id: int
    creator_id: int
    user_id: str
    membership_id: str
    referral_code: str
    referred_by: Optional[str]
    member_origin: str
    signup_fingerprint: Optional[str]
    signup_ip_hash: Optional[str]
    created_at: datetime
    total_referred: int = 0
    monthly_referred: int = 0
    lifetime_earnings: Decimal = ZERO
    monthly_earnings: Decimal = ZERO


@dataclass
class AttributionClick:
    id: int
    referral_code: str
    referrer_id: int
    fingerprint: str
    ip_hash: str
    user_agent: Optional[str]
    created_at: datetime
    expires_at: datetime
    converted: bool = False
    converted_at: Optional[datetime] = None
    converted_member_id: Optional[int] = None


@dataclass
class Commission:
    id: int
    external_payment_id: str
    sale_amount: Decimal
    member_share: Decimal
    creator_share: Decimal
    platform_share: Decimal
    status: str
    member_id: int
    referee_id: int
    creator_id: int
    created_at: datetime
    paid_at: Optional[datetime] = None
    fraud_score: int = 0
    fraud_reasons: List[str] = field(default_factory=list)
    flagged_for_review: bool = False
    payment_confirmed: bool = False
    reversal_reason: Optional[str] = None


@dataclass
class MemberCounters:
    """the cached projection fields of a member, as one comparable unit."""

    total_referred: int
    monthly_referred: int
    lifetime_earnings: Decimal
    monthly_earnings: Decimal


@dataclass
class CreatorCounters:
    total_revenue: Decimal
    monthly_revenue: Decimal
    total_referrals: int


@dataclass
class Notification:
    id: int
    kind: str
    payload: dict
    created_at: datetime
    sent_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None


def member_counters(member: Member) -> MemberCounters:
    return MemberCounters(
        total_referred=member.total_referred,
        monthly_referred=member.monthly_referred,
        lifetime_earnings=member.lifetime_earnings,
        monthly_earnings=member.monthly_earnings,
    )


def creator_counters(creator: Creator) -> CreatorCounters:
    return CreatorCounters(
        total_revenue=creator.total_revenue,
        monthly_revenue=creator.monthly_revenue,
        total_referrals=creator.total_referrals,
    )


def month_start(now: datetime) -> datetime:
    """first instant of now's calendar month (same tzinfo as now)."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
