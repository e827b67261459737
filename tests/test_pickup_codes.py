import datetime as dt

from surplus_market.config import PICKUP_CODE_TTL_SECONDS
from surplus_market.pickup_codes import (
    as_utc,
    code_expires_at,
    code_is_expired,
    code_seconds_left,
    generate_code,
    generate_plain_code,
    verify_code,
)


def test_plain_code_is_six_digits():
    for _ in range(50):
        code = generate_plain_code()
        assert len(code) == 6
        assert code.isdigit()


def test_generated_code_verifies_against_its_hash():
    plain, hashed = generate_code()
    assert hashed != plain
    assert verify_code(plain, hashed)


def test_wrong_code_does_not_verify():
    plain, hashed = generate_code()
    wrong = "0" * 6 if plain != "0" * 6 else "1" * 6
    assert not verify_code(wrong, hashed)


def test_verify_never_raises_on_malformed_input():
    _, hashed = generate_code()
    assert verify_code(None, hashed) is False
    assert verify_code(123456, hashed) is False
    assert verify_code("12ab56", hashed) is False
    assert verify_code("12345", hashed) is False
    assert verify_code("1234567", hashed) is False
    assert verify_code("123456", None) is False
    assert verify_code("123456", "not-a-bcrypt-hash") is False


def test_surrounding_whitespace_is_ignored():
    plain, hashed = generate_code()
    assert verify_code(f"  {plain} ", hashed)


def test_expiry_window(now):
    assert not code_is_expired(now, now=now)
    assert not code_is_expired(now, now=now + dt.timedelta(seconds=PICKUP_CODE_TTL_SECONDS))
    assert code_is_expired(now, now=now + dt.timedelta(seconds=PICKUP_CODE_TTL_SECONDS + 1))


def test_never_generated_counts_as_expired(now):
    assert code_is_expired(None, now=now)
    assert code_seconds_left(None, now=now) == 0
    assert code_expires_at(None) is None


def test_seconds_left(now):
    assert code_seconds_left(now, now=now) == PICKUP_CODE_TTL_SECONDS
    assert code_seconds_left(now, now=now + dt.timedelta(seconds=5)) == PICKUP_CODE_TTL_SECONDS - 5
    assert code_seconds_left(now, now=now + dt.timedelta(hours=1)) == 0


def test_naive_timestamps_are_read_as_utc(now):
    naive = now.replace(tzinfo=None)
    assert as_utc(naive) == now
    assert not code_is_expired(naive, now=now + dt.timedelta(seconds=1))
