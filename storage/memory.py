"""
in-memory storage with the same semantics as the postgres store:
unique keys, compare-and-swap updates, rollback on error.

used for local development and the test-suite. transactions are
serialized by a single lock, which is the moral equivalent of running
postgres with one connection.
"""

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from models import (
    ORGANIC,
    PAID,
    REFERRED,
    ZERO,
    AttributionClick,
    Commission,
    Creator,
    CreatorCounters,
    Member,
    MemberCounters,
    Notification,
    creator_counters,
    member_counters,
)


class _Tables:
    def __init__(self):
        self.creators: Dict[int, Creator] = {}
        self.members: Dict[int, Member] = {}
        self.clicks: Dict[int, AttributionClick] = {}
        self.commissions: Dict[int, Commission] = {}
        self.notifications: Dict[int, Notification] = {}
        self.last_ids: Dict[str, int] = {}

    def next_id(self, table: str) -> int:
        self.last_ids[table] = self.last_ids.get(table, 0) + 1
        return self.last_ids[table]


def _floored(value: Decimal, delta: Decimal) -> Tuple[Decimal, bool]:
    result = value + delta
    if result < 0:
        return ZERO, True
    return result, False


class MemoryTransaction:
    def __init__(self, tables: _Tables):
        self._t = tables

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        saved = copy.deepcopy(self._t.__dict__)
        try:
            yield
        except BaseException:
            self._t.__dict__.update(saved)
            raise

    # ---------
    # creators
    # ---------

    def insert_creator(self, company_id: str, name: str, product_url: str) -> Creator:
        if self.get_creator_by_company(company_id) is not None:
            raise ValueError(f"creator for company {company_id} already exists")
        creator = Creator(
            id=self._t.next_id("creators"),
            company_id=company_id,
            name=name,
            product_url=product_url,
        )
        self._t.creators[creator.id] = creator
        return replace(creator)

    def get_creator(self, creator_id: int) -> Optional[Creator]:
        creator = self._t.creators.get(creator_id)
        return replace(creator) if creator else None

    def get_creator_by_company(self, company_id: str) -> Optional[Creator]:
        for creator in self._t.creators.values():
            if creator.company_id == company_id:
                return replace(creator)
        return None

    def list_creator_ids(self) -> List[int]:
        return sorted(self._t.creators)

    def add_creator_revenue(self, creator_id: int, amount: Decimal, include_monthly: bool) -> bool:
        creator = self._t.creators[creator_id]
        creator.total_revenue, floor_total = _floored(creator.total_revenue, amount)
        floor_monthly = False
        if include_monthly:
            creator.monthly_revenue, floor_monthly = _floored(creator.monthly_revenue, amount)
        return floor_total or floor_monthly

    def increment_creator_referrals(self, creator_id: int) -> None:
        self._t.creators[creator_id].total_referrals += 1

    def creator_ledger_totals(self, creator_id: int, since: datetime) -> CreatorCounters:
        paid = [
            c for c in self._t.commissions.values()
            if c.creator_id == creator_id and c.status == PAID
        ]
        referrals = sum(
            1 for m in self._t.members.values()
            if m.creator_id == creator_id and m.member_origin == REFERRED
        )
        return CreatorCounters(
            total_revenue=sum((c.creator_share for c in paid), ZERO),
            monthly_revenue=sum(
                (c.creator_share for c in paid if c.paid_at and c.paid_at >= since), ZERO
            ),
            total_referrals=referrals,
        )

    def update_creator_counters_if(
        self, creator_id: int, expected: CreatorCounters, new: CreatorCounters
    ) -> bool:
        creator = self._t.creators.get(creator_id)
        if creator is None or creator_counters(creator) != expected:
            return False
        creator.total_revenue = new.total_revenue
        creator.monthly_revenue = new.monthly_revenue
        creator.total_referrals = new.total_referrals
        return True

    # ---------
    # members
    # ---------

    def referral_code_exists(self, code: str) -> bool:
        return any(m.referral_code == code for m in self._t.members.values())

    def insert_member(
        self,
        creator_id: int,
        user_id: str,
        membership_id: str,
        referral_code: str,
        fingerprint: Optional[str],
        ip_hash: Optional[str],
        now: datetime,
    ) -> Member:
        for m in self._t.members.values():
            if m.membership_id == membership_id:
                raise ValueError(f"membership {membership_id} already registered")
            if m.referral_code == referral_code:
                raise ValueError(f"referral code {referral_code} already taken")
        member = Member(
            id=self._t.next_id("members"),
            creator_id=creator_id,
            user_id=user_id,
            membership_id=membership_id,
            referral_code=referral_code,
            referred_by=None,
            member_origin=ORGANIC,
            signup_fingerprint=fingerprint,
            signup_ip_hash=ip_hash,
            created_at=now,
        )
        self._t.members[member.id] = member
        return replace(member)

    def get_member(self, member_id: int) -> Optional[Member]:
        member = self._t.members.get(member_id)
        return replace(member) if member else None

    def get_member_by_code(self, code: str) -> Optional[Member]:
        for member in self._t.members.values():
            if member.referral_code == code:
                return replace(member)
        return None

    def get_member_by_membership(self, membership_id: str) -> Optional[Member]:
        for member in self._t.members.values():
            if member.membership_id == membership_id:
                return replace(member)
        return None

    def set_member_referred(self, member_id: int, referred_by: str) -> None:
        member = self._t.members[member_id]
        member.referred_by = referred_by
        member.member_origin = REFERRED

    def increment_referral_counts(self, member_id: int) -> None:
        member = self._t.members[member_id]
        member.total_referred += 1
        member.monthly_referred += 1

    def add_member_earnings(self, member_id: int, amount: Decimal, include_monthly: bool) -> bool:
        member = self._t.members[member_id]
        member.lifetime_earnings, floor_total = _floored(member.lifetime_earnings, amount)
        floor_monthly = False
        if include_monthly:
            member.monthly_earnings, floor_monthly = _floored(member.monthly_earnings, amount)
        return floor_total or floor_monthly

    def list_member_ids(self) -> List[int]:
        return sorted(self._t.members)

    def member_ledger_totals(self, member_id: int, referral_code: str, since: datetime) -> MemberCounters:
        paid = [
            c for c in self._t.commissions.values()
            if c.member_id == member_id and c.status == PAID
        ]
        referred = [m for m in self._t.members.values() if m.referred_by == referral_code]
        return MemberCounters(
            total_referred=len(referred),
            monthly_referred=sum(1 for m in referred if m.created_at >= since),
            lifetime_earnings=sum((c.member_share for c in paid), ZERO),
            monthly_earnings=sum(
                (c.member_share for c in paid if c.paid_at and c.paid_at >= since), ZERO
            ),
        )

    def update_member_counters_if(
        self, member_id: int, expected: MemberCounters, new: MemberCounters
    ) -> bool:
        member = self._t.members.get(member_id)
        if member is None or member_counters(member) != expected:
            return False
        member.total_referred = new.total_referred
        member.monthly_referred = new.monthly_referred
        member.lifetime_earnings = new.lifetime_earnings
        member.monthly_earnings = new.monthly_earnings
        return True

    def members_sharing_fingerprint(self, fingerprint: str, exclude_ids: Iterable[int]) -> List[int]:
        excluded = set(exclude_ids)
        return sorted(
            m.id for m in self._t.members.values()
            if m.signup_fingerprint == fingerprint and m.id not in excluded
        )

    # ---------
    # attribution clicks
    # ---------

    def insert_click(
        self,
        referral_code: str,
        referrer_id: int,
        fingerprint: str,
        ip_hash: str,
        user_agent: Optional[str],
        created_at: datetime,
        expires_at: datetime,
    ) -> AttributionClick:
        click = AttributionClick(
            id=self._t.next_id("clicks"),
            referral_code=referral_code,
            referrer_id=referrer_id,
            fingerprint=fingerprint,
            ip_hash=ip_hash,
            user_agent=user_agent,
            created_at=created_at,
            expires_at=expires_at,
        )
        self._t.clicks[click.id] = click
        return replace(click)

    def get_click(self, click_id: int) -> Optional[AttributionClick]:
        click = self._t.clicks.get(click_id)
        return replace(click) if click else None

    def find_active_click(
        self,
        now: datetime,
        fingerprint: Optional[str] = None,
        ip_hash: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> Optional[AttributionClick]:
        candidates = [
            c for c in self._t.clicks.values()
            if not c.converted
            and c.expires_at > now
            and (fingerprint is None or c.fingerprint == fingerprint)
            and (ip_hash is None or c.ip_hash == ip_hash)
            and (referral_code is None or c.referral_code == referral_code)
        ]
        if not candidates:
            return None
        newest = max(candidates, key=lambda c: (c.created_at, c.id))
        return replace(newest)

    def mark_click_converted(self, click_id: int, member_id: int, now: datetime) -> bool:
        click = self._t.clicks.get(click_id)
        if click is None or click.converted:
            return False
        click.converted = True
        click.converted_at = now
        click.converted_member_id = member_id
        return True

    def get_converting_click(self, member_id: int) -> Optional[AttributionClick]:
        clicks = [c for c in self._t.clicks.values() if c.converted_member_id == member_id]
        if not clicks:
            return None
        return replace(max(clicks, key=lambda c: c.id))

    def count_clicks_since(
        self,
        referral_code: str,
        since: datetime,
        fingerprint: Optional[str] = None,
    ) -> int:
        return sum(
            1 for c in self._t.clicks.values()
            if c.referral_code == referral_code
            and c.created_at >= since
            and (fingerprint is None or c.fingerprint == fingerprint)
        )

    # ---------
    # commissions
    # ---------

    def insert_commission_if_absent(self, **fields: Any) -> Tuple[Commission, bool]:
        existing = self.get_commission_by_payment(fields["external_payment_id"])
        if existing is not None:
            return existing, False
        commission = Commission(id=self._t.next_id("commissions"), **fields)
        self._t.commissions[commission.id] = commission
        return copy.deepcopy(commission), True

    def get_commission(self, commission_id: int) -> Optional[Commission]:
        commission = self._t.commissions.get(commission_id)
        return copy.deepcopy(commission) if commission else None

    def get_commission_by_payment(self, external_payment_id: str) -> Optional[Commission]:
        for commission in self._t.commissions.values():
            if commission.external_payment_id == external_payment_id:
                return copy.deepcopy(commission)
        return None

    def transition_commission(
        self,
        commission_id: int,
        from_statuses: Iterable[str],
        to_status: str,
        paid_at: Optional[datetime] = None,
        reversal_reason: Optional[str] = None,
    ) -> Optional[Commission]:
        commission = self._t.commissions.get(commission_id)
        if commission is None or commission.status not in tuple(from_statuses):
            return None
        commission.status = to_status
        if paid_at is not None:
            commission.paid_at = paid_at
        if reversal_reason is not None:
            commission.reversal_reason = reversal_reason
        return copy.deepcopy(commission)

    def set_payment_confirmed(self, commission_id: int) -> None:
        self._t.commissions[commission_id].payment_confirmed = True

    def list_commissions(
        self,
        member_id: Optional[int] = None,
        creator_id: Optional[int] = None,
        referee_id: Optional[int] = None,
        statuses: Optional[Iterable[str]] = None,
        flagged_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[Commission]:
        wanted = tuple(statuses) if statuses is not None else None
        rows = [
            c for c in self._t.commissions.values()
            if (member_id is None or c.member_id == member_id)
            and (creator_id is None or c.creator_id == creator_id)
            and (referee_id is None or c.referee_id == referee_id)
            and (wanted is None or c.status in wanted)
            and (not flagged_only or c.flagged_for_review)
        ]
        rows.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(c) for c in rows]

    # ---------
    # outbox
    # ---------

    def enqueue_notification(self, kind: str, payload: dict, now: datetime) -> Notification:
        notification = Notification(
            id=self._t.next_id("notifications"),
            kind=kind,
            payload=dict(payload),
            created_at=now,
        )
        self._t.notifications[notification.id] = notification
        return copy.deepcopy(notification)

    def pending_notifications(self, limit: int) -> List[Notification]:
        rows = [n for n in self._t.notifications.values() if n.sent_at is None]
        rows.sort(key=lambda n: n.id)
        return [copy.deepcopy(n) for n in rows[:limit]]

    def claim_notifications(self, limit: int, now: datetime, stale_before: datetime) -> List[Notification]:
        rows = [
            n
            for n in self._t.notifications.values()
            if n.sent_at is None and (n.claimed_at is None or n.claimed_at < stale_before)
        ]
        rows.sort(key=lambda n: n.id)
        for notification in rows[:limit]:
            notification.claimed_at = now
        return [copy.deepcopy(n) for n in rows[:limit]]

    def release_notification(self, notification_id: int) -> None:
        notification = self._t.notifications[notification_id]
        if notification.sent_at is None:
            notification.claimed_at = None

    def mark_notification_sent(self, notification_id: int, now: datetime) -> None:
        notification = self._t.notifications[notification_id]
        notification.sent_at = now
        notification.claimed_at = None


class MemoryStore:
    def __init__(self):
        self._tables = _Tables()
        self._lock = threading.RLock()
        self.connected = False

    def connect(self) -> None:
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    @contextmanager
    def transaction(self, snapshot: bool = False) -> Iterator[MemoryTransaction]:
        """
        serialized transaction. on any exception the tables are restored
        to what they were when the transaction began.
        snapshot is accepted for parity with the postgres store; every
        memory transaction is already a consistent snapshot.
        """
        with self._lock:
            saved = copy.deepcopy(self._tables)
            try:
                yield MemoryTransaction(self._tables)
            except BaseException:
                self._tables = saved
                raise
