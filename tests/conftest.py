from datetime import datetime, timezone

import pytest

from config import Settings
from identity_hasher import hash_identity
from storage.memory import MemoryStore


SALT = "test-salt"
WEBHOOK_SECRET = "whsec_test"

CHROME_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"
FIREFOX_UA = "Mozilla/5.0 (Windows NT 10.0; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        storage_backend="memory",
        webhook_secret=WEBHOOK_SECRET,
        identity_salt=SALT,
        fallback_redirect_url="https://fallback.example/",
    )


@pytest.fixture
def store():
    store = MemoryStore()
    store.connect()
    yield store
    store.disconnect()


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def creator(store):
    with store.transaction() as tx:
        return tx.insert_creator(company_id="biz_acme", name="Acme", product_url="https://acme.example/join")


@pytest.fixture
def make_member(store, creator, now):
    """insert a member directly with a known referral code."""

    def _make(membership_id, referral_code, user_id=None, identity=None, created_at=None):
        with store.transaction() as tx:
            return tx.insert_member(
                creator_id=creator.id,
                user_id=user_id or f"user_{membership_id}",
                membership_id=membership_id,
                referral_code=referral_code,
                fingerprint=identity.fingerprint if identity else None,
                ip_hash=identity.ip_hash if identity else None,
                now=created_at or now,
            )

    return _make


@pytest.fixture
def jessica(make_member):
    identity = hash_identity(FIREFOX_UA, "198.51.100.20", SALT)
    return make_member("mem_jessica", "JESSICA-NSZP83", identity=identity)


@pytest.fixture
def visitor():
    return hash_identity(CHROME_UA, "203.0.113.7", SALT)
