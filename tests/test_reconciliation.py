from datetime import timedelta
from decimal import Decimal

import pytest

from commission_ledger import ingest, mark_paid
from models import (
    PAID,
    CreatorCounters,
    MemberCounters,
    creator_counters,
    member_counters,
)
from reconciliation import run_reconciliation
from storage.memory import MemoryTransaction
from webhook import PaymentPending


@pytest.fixture
def ledger(store, settings, make_member, jessica, now):
    """jessica referred one payer whose 49.99 payment was paid."""
    payer = make_member("mem_payer", "PAYER-CCCCCC")
    with store.transaction() as tx:
        tx.set_member_referred(payer.id, jessica.referral_code)
        tx.increment_referral_counts(jessica.id)
        tx.increment_creator_referrals(jessica.creator_id)

    event = PaymentPending(
        external_payment_id="pay_1",
        membership_id="mem_payer",
        company_id="biz_acme",
        sale_amount=Decimal("49.99"),
        event_type="payment.pending",
    )
    ingest(store, event, now=now, settings=settings)
    mark_paid(store, "pay_1", now=now)
    return payer


def _set_member(store, member_id, **changes):
    with store.transaction() as tx:
        current = member_counters(tx.get_member(member_id))
        new = MemberCounters(**{**current.__dict__, **changes})
        assert tx.update_member_counters_if(member_id, current, new)


def _set_creator(store, creator_id, **changes):
    with store.transaction() as tx:
        current = creator_counters(tx.get_creator(creator_id))
        new = CreatorCounters(**{**current.__dict__, **changes})
        assert tx.update_creator_counters_if(creator_id, current, new)


def test_consistent_ledger_is_clean(store, ledger, now):
    report = run_reconciliation(store, fix=True, now=now)

    assert report.mismatches == []
    assert report.fixes == 0
    assert report.health_score == 100
    assert report.members_checked == 2
    assert report.creators_checked == 1
    assert report.commissions_checked == 1


def test_report_only_does_not_write(store, jessica, ledger, now):
    _set_member(store, jessica.id, lifetime_earnings=Decimal("99.00"))

    report = run_reconciliation(store, fix=False, now=now)

    assert [(m.entity, m.entity_id, m.field) for m in report.mismatches] == [
        ("member", jessica.id, "lifetime_earnings")
    ]
    assert report.fixes == 0
    assert report.health_score == 95
    with store.transaction() as tx:
        assert tx.get_member(jessica.id).lifetime_earnings == Decimal("99.00")


def test_fix_rebuilds_counters_and_reaches_fixed_point(store, creator, jessica, ledger, now):
    _set_member(store, jessica.id, lifetime_earnings=Decimal("99.00"), total_referred=7)
    _set_creator(store, creator.id, total_revenue=Decimal("1.00"), total_referrals=0)

    first = run_reconciliation(store, fix=True, now=now)

    assert first.fixes == 2
    assert {m.field for m in first.mismatches} == {
        "lifetime_earnings",
        "total_referred",
        "total_revenue",
        "total_referrals",
    }
    assert first.fixed_member_ids == [jessica.id]

    with store.transaction() as tx:
        referrer = tx.get_member(jessica.id)
        tenant = tx.get_creator(creator.id)
    assert referrer.lifetime_earnings == Decimal("5.00")
    assert referrer.total_referred == 1
    assert tenant.total_revenue == Decimal("34.99")
    assert tenant.total_referrals == 1

    second = run_reconciliation(store, fix=True, now=now)
    assert second.fixes == 0
    assert second.mismatches == []


def test_sub_cent_drift_is_tolerated(store, jessica, ledger, now):
    _set_member(store, jessica.id, lifetime_earnings=Decimal("5.005"))

    report = run_reconciliation(store, fix=True, now=now)
    assert report.mismatches == []


def test_month_rollover_resets_monthly_fields(store, creator, jessica, ledger, now):
    next_month = now + timedelta(days=31)

    report = run_reconciliation(store, fix=True, now=next_month)

    fields = {(m.entity, m.field) for m in report.mismatches}
    assert ("member", "monthly_earnings") in fields
    assert ("member", "monthly_referred") in fields
    assert ("creator", "monthly_revenue") in fields

    with store.transaction() as tx:
        referrer = tx.get_member(jessica.id)
        tenant = tx.get_creator(creator.id)
    assert referrer.monthly_earnings == Decimal("0")
    assert referrer.monthly_referred == 0
    assert referrer.lifetime_earnings == Decimal("5.00")
    assert tenant.monthly_revenue == Decimal("0")


def test_monthly_above_lifetime_is_skipped(store, jessica, ledger, now, monkeypatch):
    def broken_totals(self, member_id, referral_code, since):
        return MemberCounters(
            total_referred=1,
            monthly_referred=2,
            lifetime_earnings=Decimal("5.00"),
            monthly_earnings=Decimal("5.00"),
        )

    monkeypatch.setattr(MemoryTransaction, "member_ledger_totals", broken_totals)
    _set_member(store, jessica.id, monthly_referred=9)

    report = run_reconciliation(store, fix=True, now=now)

    assert {"entity": "member", "id": jessica.id, "reason": "monthly_exceeds_lifetime"} in report.skipped
    assert jessica.id not in report.fixed_member_ids
    with store.transaction() as tx:
        assert tx.get_member(jessica.id).monthly_referred == 9


def test_concurrent_write_becomes_conflict(store, jessica, ledger, now, monkeypatch):
    _set_member(store, jessica.id, lifetime_earnings=Decimal("99.00"))
    monkeypatch.setattr(MemoryTransaction, "update_member_counters_if", lambda self, *a: False)

    report = run_reconciliation(store, fix=True, now=now)

    assert report.conflicts == [{"entity": "member", "id": jessica.id}]
    assert report.fixes == 0


def test_share_tie_out_violation_is_reported(store, creator, jessica, ledger, now):
    with store.transaction() as tx:
        tx.insert_commission_if_absent(
            external_payment_id="pay_broken",
            sale_amount=Decimal("10.00"),
            member_share=Decimal("1.00"),
            creator_share=Decimal("7.00"),
            platform_share=Decimal("1.00"),
            status=PAID,
            member_id=jessica.id,
            referee_id=ledger.id,
            creator_id=creator.id,
            created_at=now,
            paid_at=now,
        )

    report = run_reconciliation(store, fix=False, now=now)

    broken = [m for m in report.mismatches if m.entity == "commission"]
    assert len(broken) == 1
    assert broken[0].field == "shares"
    assert broken[0].note == "shares do not sum to sale amount"


def test_report_serializes(store, jessica, ledger, now):
    _set_member(store, jessica.id, total_referred=4)

    data = run_reconciliation(store, fix=True, now=now).as_dict()

    assert data["fixes"] == 1
    assert data["health_score"] == 95
    assert data["mismatches"][0] == {
        "entity": "member",
        "entity_id": jessica.id,
        "field": "total_referred",
        "cached": "4",
        "actual": "1",
        "note": None,
    }
