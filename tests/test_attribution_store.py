from datetime import timedelta

import pytest

from attribution_store import find_active_attribution, find_active_click_for_code, record_click
from errors import NotFoundError, ValidationError
from identity_hasher import hash_identity


CHROME_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


def _click(store, code, identity, at, user_agent=CHROME_UA):
    with store.transaction() as tx:
        return record_click(tx, code, identity.fingerprint, identity.ip_hash, user_agent, now=at)


def _active(store, identity, at):
    with store.transaction() as tx:
        return find_active_attribution(tx, identity.fingerprint, identity.ip_hash, now=at)


def test_click_gets_thirty_day_window(store, jessica, visitor, now):
    click = _click(store, "JESSICA-NSZP83", visitor, now)

    assert click.referrer_id == jessica.id
    assert click.expires_at == now + timedelta(days=30)
    assert click.converted is False


def test_malformed_code_rejected(store, jessica, visitor, now):
    with pytest.raises(ValidationError):
        _click(store, "jessica-nszp83", visitor, now)


def test_unknown_code_not_found(store, jessica, visitor, now):
    with pytest.raises(NotFoundError):
        _click(store, "NOBODY-ABCDEF", visitor, now)


def test_every_click_is_a_new_row(store, jessica, visitor, now):
    first = _click(store, "JESSICA-NSZP83", visitor, now)
    second = _click(store, "JESSICA-NSZP83", visitor, now + timedelta(minutes=1))

    assert first.id != second.id


def test_active_attribution_matches_fingerprint(store, jessica, visitor, now):
    click = _click(store, "JESSICA-NSZP83", visitor, now)

    found = _active(store, visitor, now + timedelta(hours=1))
    assert found.id == click.id


def test_expired_click_never_matches(store, jessica, visitor, now):
    _click(store, "JESSICA-NSZP83", visitor, now)

    assert _active(store, visitor, now + timedelta(days=30)) is None
    assert _active(store, visitor, now + timedelta(days=45)) is None


def test_converted_click_never_matches(store, jessica, visitor, now):
    click = _click(store, "JESSICA-NSZP83", visitor, now)
    with store.transaction() as tx:
        assert tx.mark_click_converted(click.id, jessica.id, now)

    assert _active(store, visitor, now + timedelta(hours=1)) is None


def test_newest_click_wins(store, make_member, jessica, visitor, now):
    make_member("mem_tom", "TOM-QWERTY")
    _click(store, "JESSICA-NSZP83", visitor, now)
    newer = _click(store, "TOM-QWERTY", visitor, now + timedelta(hours=2))

    found = _active(store, visitor, now + timedelta(hours=3))
    assert found.id == newer.id
    assert found.referral_code == "TOM-QWERTY"


def test_fingerprint_match_beats_newer_ip_only_match(store, make_member, jessica, visitor, now):
    make_member("mem_tom", "TOM-QWERTY")
    # same ip, other browser: shares only the ip hash with visitor
    other_browser = hash_identity("Firefox/121", "203.0.113.7", "test-salt")
    assert other_browser.ip_hash == visitor.ip_hash

    by_fingerprint = _click(store, "JESSICA-NSZP83", visitor, now)
    _click(store, "TOM-QWERTY", other_browser, now + timedelta(hours=1))

    found = _active(store, visitor, now + timedelta(hours=2))
    assert found.id == by_fingerprint.id


def test_ip_only_match_used_when_fingerprint_misses(store, jessica, visitor, now):
    click = _click(store, "JESSICA-NSZP83", visitor, now)
    new_browser = hash_identity("Safari/17", "203.0.113.7", "test-salt")

    found = _active(store, new_browser, now + timedelta(hours=1))
    assert found.id == click.id


def test_no_clicks_is_organic(store, jessica, visitor, now):
    assert _active(store, visitor, now) is None


def test_click_for_code_lookup(store, jessica, visitor, now):
    click = _click(store, "JESSICA-NSZP83", visitor, now)

    with store.transaction() as tx:
        assert find_active_click_for_code(tx, "JESSICA-NSZP83", now + timedelta(days=1)).id == click.id
        assert find_active_click_for_code(tx, "JESSICA-NSZP83", now + timedelta(days=31)) is None
        assert find_active_click_for_code(tx, "garbage", now) is None
