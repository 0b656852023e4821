import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from errors import SignatureError, ValidationError
from webhook import (
    PaymentChargeback,
    PaymentPending,
    PaymentSucceeded,
    decode_event,
    sign_body,
    verify_signature,
)


SECRET = "whsec_test"
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _body(**overrides):
    payload = {
        "externalPaymentId": "pay_1",
        "membershipId": "mem_payer",
        "companyId": "biz_acme",
        "saleAmount": 49.99,
        "eventType": "payment.pending",
    }
    payload.update(overrides)
    return json.dumps(payload).encode()


def test_valid_signature_passes():
    body = _body()
    verify_signature(body, sign_body(body, SECRET), SECRET)
    verify_signature(body, "sha256=" + sign_body(body, SECRET), SECRET)


def test_tampered_body_fails():
    body = _body()
    signature = sign_body(body, SECRET)

    with pytest.raises(SignatureError):
        verify_signature(_body(saleAmount=4999.0), signature, SECRET)


@pytest.mark.parametrize("signature,secret", [(None, SECRET), ("", SECRET), ("abc", SECRET), ("abc", None)])
def test_missing_or_wrong_signature(signature, secret):
    with pytest.raises(SignatureError):
        verify_signature(_body(), signature, secret)


def test_decodes_pending_with_exact_amount():
    event = decode_event(_body(), now=NOW)

    assert isinstance(event, PaymentPending)
    assert event.external_payment_id == "pay_1"
    assert event.membership_id == "mem_payer"
    assert event.company_id == "biz_acme"
    assert event.sale_amount == Decimal("49.99")


@pytest.mark.parametrize(
    "event_type,cls",
    [("payment.succeeded", PaymentSucceeded), ("payment.chargeback", PaymentChargeback)],
)
def test_event_type_picks_variant(event_type, cls):
    event = decode_event(_body(eventType=event_type), now=NOW)
    assert isinstance(event, cls)
    assert event.event_type == event_type


def test_string_amount_is_accepted():
    event = decode_event(_body(saleAmount="120.50"), now=NOW)
    assert event.sale_amount == Decimal("120.50")


def test_unknown_event_type_rejected():
    with pytest.raises(ValidationError):
        decode_event(_body(eventType="payment.teleported"), now=NOW)


def test_missing_field_rejected():
    payload = json.loads(_body())
    del payload["membershipId"]

    with pytest.raises(ValidationError):
        decode_event(json.dumps(payload).encode(), now=NOW)


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b""])
def test_malformed_body_rejected(body):
    with pytest.raises(ValidationError):
        decode_event(body, now=NOW)


def test_fresh_event_accepted():
    created = (NOW - timedelta(seconds=30)).isoformat()
    event = decode_event(_body(createdAt=created), now=NOW)
    assert event.created_at is not None


def test_stale_event_rejected():
    created = (NOW - timedelta(minutes=10)).isoformat()

    with pytest.raises(ValidationError):
        decode_event(_body(createdAt=created), max_age_seconds=300, now=NOW)


def test_small_clock_skew_tolerated():
    created = (NOW + timedelta(seconds=30)).isoformat()
    assert decode_event(_body(createdAt=created), now=NOW).created_at is not None


def test_future_dated_event_rejected(caplog):
    created = (NOW + timedelta(days=7)).isoformat()

    with caplog.at_level(logging.WARNING, logger="webhook"):
        with pytest.raises(ValidationError):
            decode_event(_body(createdAt=created), now=NOW)

    assert "[SECURITY]" in caplog.text
