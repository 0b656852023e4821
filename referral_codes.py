import re
import secrets
from typing import Callable


# no 0/O, 1/I so codes survive being read aloud
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SUFFIX_LENGTH = 6
MAX_PREFIX_LENGTH = 10

REFERRAL_CODE_RE = re.compile(r"^[A-Z]+-[A-Z0-9]{6}$")


def is_valid_referral_code(code: str) -> bool:
    """PREFIX-SUFFIX: uppercase letters, hyphen, six uppercase alphanumerics."""
    return bool(code) and REFERRAL_CODE_RE.match(code) is not None


def _prefix_from_name(name: str) -> str:
    first = re.split(r"[\s@]", name.strip(), maxsplit=1)[0] if name else ""
    letters = re.sub(r"[^A-Z]", "", first.upper())[:MAX_PREFIX_LENGTH]
    return letters or "USER"


def generate_referral_code(name: str) -> str:
    """e.g. 'jessica smith' -> 'JESSICA-NSZP83'."""
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{_prefix_from_name(name)}-{suffix}"


def generate_unique_referral_code(name: str, exists: Callable[[str], bool]) -> str:
    """
    keep drawing codes until storage says one is free.
    the unique index on referral_code is still the final guard.
    """
    while True:
        candidate = generate_referral_code(name)
        if not exists(candidate):
            return candidate
