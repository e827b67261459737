"""
Short numeric pickup codes.

Only a bcrypt hash of a code is meant to outlive its validity window. The hash cost
is PICKUP_CODE_HASH_ROUNDS, kept well below the password cost: redemption verifies a
candidate against every open order of one company, so verification must stay cheap,
while the short TTL is what actually bounds brute force over the 10**6 code space.
"""
import datetime as dt
import secrets
import string
from typing import Optional, Tuple

from passlib.context import CryptContext

from .config import PICKUP_CODE_HASH_ROUNDS, PICKUP_CODE_LENGTH, PICKUP_CODE_TTL_SECONDS

code_context = CryptContext(schemes=["bcrypt"], bcrypt__rounds=PICKUP_CODE_HASH_ROUNDS)


def generate_plain_code(length: int = PICKUP_CODE_LENGTH) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def generate_code() -> Tuple[str, str]:
    """Return ``(plaintext, hashed)`` for a fresh code."""
    plain = generate_plain_code()
    return plain, code_context.hash(plain)


def verify_code(candidate, stored_hash) -> bool:
    """True iff ``candidate`` hashes to ``stored_hash``. Never raises."""
    if not isinstance(candidate, str) or not isinstance(stored_hash, str):
        return False
    candidate = candidate.strip()
    if len(candidate) != PICKUP_CODE_LENGTH or not candidate.isdigit():
        return False
    try:
        return code_context.verify(candidate, stored_hash)
    except (ValueError, TypeError):
        return False


def as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    # Some backends (sqlite) hand back naive datetimes for timezone=True columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def code_expires_at(generated_at: Optional[dt.datetime]) -> Optional[dt.datetime]:
    generated_at = as_utc(generated_at)
    if generated_at is None:
        return None
    return generated_at + dt.timedelta(seconds=PICKUP_CODE_TTL_SECONDS)


def code_is_expired(generated_at: Optional[dt.datetime], *, now: Optional[dt.datetime] = None) -> bool:
    """A code that was never generated counts as expired."""
    expires_at = code_expires_at(generated_at)
    if expires_at is None:
        return True
    now = now or dt.datetime.now(dt.timezone.utc)
    return now > expires_at


def code_seconds_left(generated_at: Optional[dt.datetime], *, now: Optional[dt.datetime] = None) -> int:
    expires_at = code_expires_at(generated_at)
    if expires_at is None:
        return 0
    now = now or dt.datetime.now(dt.timezone.utc)
    return max(0, int((expires_at - now).total_seconds()))
