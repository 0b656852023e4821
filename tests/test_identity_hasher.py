import hashlib

from identity_hasher import client_ip, hash_identity


UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) Safari/605.1.15"


def test_hashes_are_deterministic_sha256_hex():
    first = hash_identity(UA, "203.0.113.7", "salt")
    second = hash_identity(UA, "203.0.113.7", "salt")

    assert first == second
    assert len(first.fingerprint) == 64
    assert len(first.ip_hash) == 64
    assert first.fingerprint == hashlib.sha256(f"{UA}|203.0.113.7".encode()).hexdigest()
    assert first.ip_hash == hashlib.sha256(b"203.0.113.7salt").hexdigest()


def test_raw_values_never_appear_in_output():
    identity = hash_identity(UA, "203.0.113.7", "salt")

    assert "203.0.113.7" not in identity.fingerprint
    assert "203.0.113.7" not in identity.ip_hash


def test_different_browser_same_ip_shares_ip_hash_only():
    chrome = hash_identity("Chrome/120", "203.0.113.7", "salt")
    firefox = hash_identity("Firefox/121", "203.0.113.7", "salt")

    assert chrome.fingerprint != firefox.fingerprint
    assert chrome.ip_hash == firefox.ip_hash


def test_salt_changes_ip_hash_but_not_fingerprint():
    a = hash_identity(UA, "203.0.113.7", "salt-a")
    b = hash_identity(UA, "203.0.113.7", "salt-b")

    assert a.fingerprint == b.fingerprint
    assert a.ip_hash != b.ip_hash


def test_forwarded_list_and_port_are_cleaned():
    plain = hash_identity(UA, "203.0.113.7", "salt")

    assert hash_identity(UA, "203.0.113.7, 10.0.0.1", "salt") == plain
    assert hash_identity(UA, "203.0.113.7:51234", "salt") == plain


def test_ipv6_keeps_its_colons():
    bare = hash_identity(UA, "2001:db8::1", "salt")
    bracketed = hash_identity(UA, "[2001:db8::1]:443", "salt")

    assert bare == bracketed
    assert bare.ip_hash == hashlib.sha256(b"2001:db8::1salt").hexdigest()


def test_missing_values_hash_unknown():
    identity = hash_identity(None, None, "salt")

    assert identity.fingerprint == hashlib.sha256(b"unknown|unknown").hexdigest()
    assert identity.ip_hash == hashlib.sha256(b"unknownsalt").hexdigest()


def test_client_ip_prefers_forwarded_headers():
    headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1", "x-real-ip": "10.0.0.2"}
    assert client_ip(headers, peer="127.0.0.1") == "203.0.113.7"


def test_client_ip_header_order():
    assert client_ip({"x-real-ip": "198.51.100.1", "cf-connecting-ip": "198.51.100.2"}) == "198.51.100.1"
    assert client_ip({"cf-connecting-ip": "198.51.100.2"}) == "198.51.100.2"


def test_client_ip_falls_back_to_peer():
    assert client_ip({}, peer="127.0.0.1") == "127.0.0.1"
    assert client_ip({}) is None
