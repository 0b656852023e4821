"""
reconciliation of cached counters against the ledger.

the ledger (paid commissions, referred members) is the source of truth.
member and creator counters are a projection of it; this module
recomputes the projection, reports drift and optionally rewrites it.

each entity is read in its own snapshot transaction and, in fix mode,
written back with one conditional update that only lands if the cached
values are still the ones that were read. a concurrent ledger write turns
the fix into a reported conflict for the next run to pick up.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from errors import ReconciliationMismatch
from models import PAID, creator_counters, member_counters, month_start


logger = logging.getLogger(__name__)

MONEY_EPSILON = Decimal("0.01")
HEALTH_PENALTY = 5

MEMBER_FIELDS = {
    "total_referred": False,
    "monthly_referred": False,
    "lifetime_earnings": True,
    "monthly_earnings": True,
}
CREATOR_FIELDS = {
    "total_revenue": True,
    "monthly_revenue": True,
    "total_referrals": False,
}


@dataclass
class ReconciliationReport:
    fix: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    members_checked: int = 0
    creators_checked: int = 0
    commissions_checked: int = 0
    mismatches: List[ReconciliationMismatch] = field(default_factory=list)
    fixed: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def fixes(self) -> int:
        return len(self.fixed)

    @property
    def health_score(self) -> int:
        return max(0, 100 - HEALTH_PENALTY * len(self.mismatches))

    @property
    def fixed_member_ids(self) -> List[int]:
        return [f["id"] for f in self.fixed if f["entity"] == "member"]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fix": self.fix,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "members_checked": self.members_checked,
            "creators_checked": self.creators_checked,
            "commissions_checked": self.commissions_checked,
            "health_score": self.health_score,
            "fixes": self.fixes,
            "mismatches": [m.as_dict() for m in self.mismatches],
            "fixed": list(self.fixed),
            "skipped": list(self.skipped),
            "conflicts": list(self.conflicts),
        }


def _differs(cached, actual, is_money: bool) -> bool:
    if is_money:
        return abs(cached - actual) >= MONEY_EPSILON
    return cached != actual


def _diff(entity: str, entity_id: int, fields: Dict[str, bool], cached, actual) -> List[ReconciliationMismatch]:
    found = []
    for name, is_money in fields.items():
        have = getattr(cached, name)
        want = getattr(actual, name)
        if _differs(have, want, is_money):
            found.append(ReconciliationMismatch(entity, entity_id, name, have, want))
    return found


def _record(report: ReconciliationReport, mismatches: List[ReconciliationMismatch]) -> None:
    for mismatch in mismatches:
        logger.warning("reconciliation mismatch: %s", mismatch)
    report.mismatches.extend(mismatches)


def _check_member(store, member_id: int, since: datetime, report: ReconciliationReport) -> None:
    # 1) snapshot read
    with store.transaction(snapshot=True) as tx:
        member = tx.get_member(member_id)
        if member is None:
            return
        cached = member_counters(member)
        actual = tx.member_ledger_totals(member.id, member.referral_code, since)
    report.members_checked += 1

    # 2) compare
    mismatches = _diff("member", member_id, MEMBER_FIELDS, cached, actual)
    if not mismatches:
        return
    _record(report, mismatches)

    # 3) a month can never hold more than the lifetime
    if actual.monthly_referred > actual.total_referred or actual.monthly_earnings > actual.lifetime_earnings:
        logger.error(
            "member %s: recomputed monthly exceeds lifetime (%s > %s, %s > %s), not fixing",
            member_id,
            actual.monthly_referred,
            actual.total_referred,
            actual.monthly_earnings,
            actual.lifetime_earnings,
        )
        report.skipped.append({"entity": "member", "id": member_id, "reason": "monthly_exceeds_lifetime"})
        return

    if not report.fix:
        return

    # 4) conditional write
    with store.transaction() as tx:
        applied = tx.update_member_counters_if(member_id, cached, actual)
    if applied:
        logger.info("member %s counters rebuilt from ledger", member_id)
        report.fixed.append({"entity": "member", "id": member_id})
    else:
        logger.warning("member %s changed during reconciliation, fix deferred to next run", member_id)
        report.conflicts.append({"entity": "member", "id": member_id})


def _check_creator(store, creator_id: int, since: datetime, report: ReconciliationReport) -> None:
    with store.transaction(snapshot=True) as tx:
        creator = tx.get_creator(creator_id)
        if creator is None:
            return
        cached = creator_counters(creator)
        actual = tx.creator_ledger_totals(creator_id, since)
    report.creators_checked += 1

    mismatches = _diff("creator", creator_id, CREATOR_FIELDS, cached, actual)
    if not mismatches:
        return
    _record(report, mismatches)

    if actual.monthly_revenue > actual.total_revenue:
        logger.error(
            "creator %s: recomputed monthly revenue %s exceeds total %s, not fixing",
            creator_id,
            actual.monthly_revenue,
            actual.total_revenue,
        )
        report.skipped.append({"entity": "creator", "id": creator_id, "reason": "monthly_exceeds_lifetime"})
        return

    if not report.fix:
        return

    with store.transaction() as tx:
        applied = tx.update_creator_counters_if(creator_id, cached, actual)
    if applied:
        logger.info("creator %s counters rebuilt from ledger", creator_id)
        report.fixed.append({"entity": "creator", "id": creator_id})
    else:
        logger.warning("creator %s changed during reconciliation, fix deferred to next run", creator_id)
        report.conflicts.append({"entity": "creator", "id": creator_id})


def _check_commissions(store, report: ReconciliationReport) -> None:
    """every paid commission must tie out to its sale amount exactly."""
    with store.transaction(snapshot=True) as tx:
        paid = tx.list_commissions(statuses=[PAID])
    report.commissions_checked = len(paid)

    for commission in paid:
        total = commission.member_share + commission.creator_share + commission.platform_share
        if total != commission.sale_amount:
            _record(
                report,
                [
                    ReconciliationMismatch(
                        "commission",
                        commission.id,
                        "shares",
                        total,
                        commission.sale_amount,
                        note="shares do not sum to sale amount",
                    )
                ],
            )


def run_reconciliation(store, fix: bool = False, now: Optional[datetime] = None) -> ReconciliationReport:
    """
    recompute every member and creator projection from the ledger.
    with fix=True, drifted counters are rewritten; otherwise only reported.
    """
    now = now or datetime.now(timezone.utc)
    since = month_start(now)
    report = ReconciliationReport(fix=fix, started_at=now)

    with store.transaction(snapshot=True) as tx:
        member_ids = tx.list_member_ids()
        creator_ids = tx.list_creator_ids()

    for member_id in member_ids:
        _check_member(store, member_id, since, report)
    for creator_id in creator_ids:
        _check_creator(store, creator_id, since, report)
    _check_commissions(store, report)

    report.finished_at = datetime.now(timezone.utc)
    logger.info(
        "reconciliation done: %s members, %s creators, %s mismatches, %s fixed, %s skipped, %s conflicts, health %s",
        report.members_checked,
        report.creators_checked,
        len(report.mismatches),
        report.fixes,
        len(report.skipped),
        len(report.conflicts),
        report.health_score,
    )
    return report
