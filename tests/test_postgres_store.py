import os
from datetime import timedelta
from decimal import Decimal

import pytest

from attribution_store import record_click
from commission_ledger import APPLIED, DUPLICATE, ingest, mark_paid, reverse
from conversion_matcher import register_member
from identity_hasher import hash_identity
from models import REFUND, REFERRED
from reconciliation import run_reconciliation
from outbox import drain_outbox
from storage import Database, PostgresStore
from storage.repositories import PostgresTransaction
from webhook import PaymentSucceeded


TEST_DSN = os.environ.get("AFFILIATE_LEDGER_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(
    not TEST_DSN, reason="AFFILIATE_LEDGER_TEST_DATABASE_URL not set"
)


@pytest.fixture
def pg_store():
    database = Database(TEST_DSN)
    store = PostgresStore(database)
    store.connect()
    database.apply_schema()
    with database.connection() as conn:
        conn.execute(
            "TRUNCATE notification_outbox, commissions, attribution_clicks, members, creators RESTART IDENTITY CASCADE"
        )
        conn.commit()
    yield store
    store.disconnect()


def test_full_flow_against_postgres(pg_store, settings, now):
    """
    same walk as the http scenario, straight against postgres:
    click, signup, pay twice, reconcile twice, refund.
    """
    visitor = hash_identity("Chrome/120", "203.0.113.7", settings.identity_salt)

    with pg_store.transaction() as tx:
        creator = tx.insert_creator(company_id="biz_acme", name="Acme", product_url="https://acme.example/")
        jessica = tx.insert_member(
            creator_id=creator.id,
            user_id="user_jessica",
            membership_id="mem_jessica",
            referral_code="JESSICA-NSZP83",
            fingerprint=None,
            ip_hash=None,
            now=now,
        )

    with pg_store.transaction() as tx:
        click = record_click(tx, "JESSICA-NSZP83", visitor.fingerprint, visitor.ip_hash, "Chrome/120", now=now)

    signup = register_member(
        pg_store,
        creator_id=creator.id,
        user_id="user_new",
        membership_id="mem_new",
        name="sam",
        identity=visitor,
        now=now + timedelta(hours=1),
        settings=settings,
    )
    assert signup.origin == REFERRED
    assert signup.click_id == click.id

    event = PaymentSucceeded(
        external_payment_id="pay_1",
        membership_id="mem_new",
        company_id="biz_acme",
        sale_amount=Decimal("49.99"),
        event_type="payment.succeeded",
    )
    first = ingest(pg_store, event, now=now + timedelta(hours=2), settings=settings)
    second = ingest(pg_store, event, now=now + timedelta(hours=2), settings=settings)
    assert first.status == APPLIED
    assert second.status == DUPLICATE
    assert second.commission.id == first.commission.id
    assert first.commission.member_share == Decimal("5.00")
    assert first.commission.creator_share == Decimal("34.99")
    assert first.commission.platform_share == Decimal("10.00")

    mark_paid(pg_store, "pay_1", now=now + timedelta(hours=2))

    with pg_store.transaction() as tx:
        assert tx.get_member(jessica.id).lifetime_earnings == Decimal("5.00")
        assert len(tx.list_commissions()) == 1

    assert run_reconciliation(pg_store, fix=True, now=now + timedelta(hours=3)).mismatches == []
    assert run_reconciliation(pg_store, fix=True, now=now + timedelta(hours=3)).fixes == 0

    reverse(pg_store, "pay_1", REFUND, now=now + timedelta(hours=4))
    with pg_store.transaction() as tx:
        assert tx.get_member(jessica.id).lifetime_earnings == Decimal("0.00")


def test_click_conversion_is_single_shot(pg_store, now):
    with pg_store.transaction() as tx:
        creator = tx.insert_creator(company_id="biz_acme", name="Acme", product_url="https://acme.example/")
        member = tx.insert_member(
            creator_id=creator.id,
            user_id="u1",
            membership_id="m1",
            referral_code="ANNA-ABCDEF",
            fingerprint=None,
            ip_hash=None,
            now=now,
        )
        click = tx.insert_click(
            referral_code="ANNA-ABCDEF",
            referrer_id=member.id,
            fingerprint="fp",
            ip_hash="ip",
            user_agent=None,
            created_at=now,
            expires_at=now + timedelta(days=30),
        )

    with pg_store.transaction() as tx:
        assert tx.mark_click_converted(click.id, member.id, now) is True
    with pg_store.transaction() as tx:
        assert tx.mark_click_converted(click.id, member.id, now) is False


def test_duplicate_membership_maps_to_value_error(pg_store, now):
    with pg_store.transaction() as tx:
        creator = tx.insert_creator(company_id="biz_acme", name="Acme", product_url="https://acme.example/")
        tx.insert_member(creator.id, "u1", "m1", "ANNA-ABCDEF", None, None, now)

    with pytest.raises(ValueError):
        with pg_store.transaction() as tx:
            tx.insert_member(creator.id, "u2", "m1", "BEN-ABCDEF", None, None, now)


def test_lost_membership_race_keeps_transaction_usable(pg_store, settings, now, monkeypatch):
    with pg_store.transaction() as tx:
        creator = tx.insert_creator(company_id="biz_acme", name="Acme", product_url="https://acme.example/")

    first = register_member(pg_store, creator.id, "u1", "mem_dup", "sam", now=now, settings=settings)

    real_lookup = PostgresTransaction.get_member_by_membership
    calls = []

    def stale_first_read(self, membership_id):
        calls.append(membership_id)
        return None if len(calls) == 1 else real_lookup(self, membership_id)

    monkeypatch.setattr(PostgresTransaction, "get_member_by_membership", stale_first_read)

    second = register_member(pg_store, creator.id, "u1", "mem_dup", "sam", now=now, settings=settings)

    assert second.created is False
    assert second.member.id == first.member.id


def test_outbox_claims_are_exclusive(pg_store, now):
    with pg_store.transaction() as tx:
        tx.enqueue_notification("commission.paid", {"id": 1}, now)

    with pg_store.transaction() as tx:
        claimed = tx.claim_notifications(10, now, stale_before=now - timedelta(minutes=5))
    with pg_store.transaction() as tx:
        again = tx.claim_notifications(10, now, stale_before=now - timedelta(minutes=5))

    assert [n.kind for n in claimed] == ["commission.paid"]
    assert again == []

    delivered = []
    later = now + timedelta(minutes=10)
    assert drain_outbox(pg_store, delivered.append, now=later) == 1
    with pg_store.transaction() as tx:
        assert tx.pending_notifications(10) == []
