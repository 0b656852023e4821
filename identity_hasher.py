import hashlib
from dataclasses import dataclass
from typing import Mapping, Optional


# checked in order; the first header present wins
FORWARDED_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
)


@dataclass(frozen=True)
class VisitorIdentity:
    fingerprint: str
    ip_hash: str


def _clean_ip(ip: Optional[str]) -> str:
    """
    first entry of a forwarded list, port stripped.
    ipv6 addresses keep their colons; only a bracketed [addr]:port is unwrapped.
    """
    if not ip:
        return "unknown"
    first = ip.split(",")[0].strip()
    if first.startswith("["):
        return first[1:].split("]")[0]
    if first.count(":") == 1:
        return first.split(":")[0]
    return first or "unknown"


def hash_identity(user_agent: Optional[str], ip: Optional[str], salt: str) -> VisitorIdentity:
    """
    derive the privacy-preserving visitor identity.

    - fingerprint: sha256 of "user_agent|ip"
    - ip_hash:     sha256 of ip + salt

    both are 64 hex chars, deterministic for the same input. raw values
    are never stored.
    """
    ua = user_agent or "unknown"
    clean_ip = _clean_ip(ip)

    fingerprint = hashlib.sha256(f"{ua}|{clean_ip}".encode("utf-8")).hexdigest()
    ip_hash = hashlib.sha256(f"{clean_ip}{salt}".encode("utf-8")).hexdigest()

    return VisitorIdentity(fingerprint=fingerprint, ip_hash=ip_hash)


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> Optional[str]:
    """
    pick the client ip from proxy headers, falling back to the socket peer.
    headers must be a case-insensitive mapping (starlette Headers is).
    """
    for name in FORWARDED_IP_HEADERS:
        value = headers.get(name)
        if value:
            return value.split(",")[0].strip()
    return peer
