from datetime import datetime, timedelta, timezone

import pytest

from otp_errors import InvalidSecret
from otp_token import (
    decode_secret,
    encode_secret,
    format_token,
    get_time_remaining,
    hotp,
    is_valid_base32,
    token_formatter,
    totp,
    totp_counter,
)

CEST = timezone(timedelta(hours=2))


def parse_time(value: str) -> int:
    """'2018-06-27 00:15:09.075934839 +0200' -> exact nanoseconds since epoch"""
    stamp, offset = value.rsplit(" ", 1)
    seconds_part, fraction = stamp.split(".")
    dt = datetime.strptime(f"{seconds_part} {offset}", "%Y-%m-%d %H:%M:%S %z")
    return int(dt.timestamp()) * 1_000_000_000 + int(fraction)


# ==================== HOTP ====================

@pytest.mark.parametrize("secret,expected", [
    ("ORSXG5A=", 193637),
    ("MFXG65DIMVZHIZLTOQFA====", 463293),
    ("ORUGS43JON2GK43UGI======", 335172),
])
def test_hotp_known_vectors(secret, expected):
    now = datetime(2018, 7, 4, 22, 30, 15, 215234, tzinfo=CEST)
    counter = totp_counter(now, 30)
    assert hotp(decode_secret(secret), 6, counter) == expected


def test_hotp_rfc4226_vectors():
    secret = b"12345678901234567890"
    expected = [755224, 287082, 359152, 969429, 338314, 254676, 287922, 162583, 399871, 520489]
    assert [hotp(secret, 6, c) for c in range(10)] == expected


@pytest.mark.parametrize("digits", range(1, 9))
@pytest.mark.parametrize("secret", [b"test", b"\x00" * 20, b"12345678901234567890"])
def test_hotp_token_fits_digits(secret, digits):
    for counter in (0, 1, 59, 2 ** 32, 2 ** 63):
        token = hotp(secret, digits, counter)
        assert 0 <= token < 10 ** digits
        assert len(format_token(digits, token)) == digits


def test_hotp_caps_digits_at_eight():
    secret = b"12345678901234567890"
    assert hotp(secret, 10, 5) == hotp(secret, 8, 5)


@pytest.mark.parametrize("digits", [0, -3])
def test_hotp_non_positive_digits_yields_zero(digits):
    assert hotp(b"12345678901234567890", digits, 1) == 0


# ==================== TOTP ====================

TOTP_CASES = [
    (6, 30, "2018-06-27 00:15:09.075934839 +0200", 955788),
    (6, 30, "2018-06-27 00:15:39.075934839 +0200", 985695),
    (6, 30, "2018-06-27 00:16:09.075934839 +0200", 200922),
    (6, 30, "2018-06-27 00:16:39.075934839 +0200", 972657),
    (6, 30, "2018-06-27 00:17:09.075934839 +0200", 236324),

    (6, 60, "2018-06-27 00:15:09.076282471 +0200", 386889),
    (6, 60, "2018-06-27 00:16:09.076282471 +0200", 312504),
    (6, 60, "2018-06-27 00:17:09.076282471 +0200", 20257),
    (6, 60, "2018-06-27 00:18:09.076282471 +0200", 198545),
    (6, 60, "2018-06-27 00:19:09.076282471 +0200", 105702),

    (10, 30, "2018-06-27 00:15:09.076444814 +0200", 57955788),
    (10, 30, "2018-06-27 00:15:39.076444814 +0200", 14985695),
    (10, 30, "2018-06-27 00:16:09.076444814 +0200", 8200922),
    (10, 30, "2018-06-27 00:16:39.076444814 +0200", 44972657),
    (10, 30, "2018-06-27 00:17:09.076444814 +0200", 28236324),
]


@pytest.mark.parametrize("digits,interval,when,expected", TOTP_CASES)
def test_totp_conformance(digits, interval, when, expected):
    assert totp(b"test", parse_time(when), digits, interval) == expected


def test_totp_accepts_aware_datetime():
    now = datetime(2018, 6, 27, 0, 15, 9, 75934, tzinfo=CEST)
    assert totp(b"test", now, 6, 30) == 955788


def test_totp_naive_datetime_is_utc():
    aware = datetime(2018, 6, 26, 22, 15, 9, tzinfo=timezone.utc)
    assert totp(b"test", aware.replace(tzinfo=None), 6, 30) == totp(b"test", aware, 6, 30)


def test_totp_counter_boundaries():
    assert totp_counter(29_999_999_999, 30) == 0
    assert totp_counter(30_000_000_000, 30) == 1


def test_time_remaining():
    assert get_time_remaining(30, 10 * 1_000_000_000) == 20
    assert get_time_remaining(30, 30 * 1_000_000_000) == 30


# ==================== Formatter ====================

@pytest.mark.parametrize("digits,token,expected", [
    (6, 1, "000001"),
    (6, 12, "000012"),
    (6, 123, "000123"),
    (6, 1234, "001234"),
    (6, 12345, "012345"),
    (6, 123456, "123456"),
    (8, 1234567, "01234567"),
    (8, 12345678, "12345678"),
    (4, 123456, "123456"),
])
def test_format_token(digits, token, expected):
    assert format_token(digits, token) == expected


def test_token_formatter_names():
    assert token_formatter("default", 6, 123) == "123"
    assert token_formatter("google-authenticator", 6, 123) == "000123"
    with pytest.raises(ValueError):
        token_formatter("fancy", 6, 123)


# ==================== Base32 ====================

def test_base32_validation():
    assert is_valid_base32("ORSXG5A=")
    assert is_valid_base32("orsx g5a")
    assert is_valid_base32("4SJHB4GSD43FZBAI7C2HLRJGPQ")
    assert not is_valid_base32("*^ASD")
    assert not is_valid_base32("")


def test_decode_secret_errors():
    with pytest.raises(InvalidSecret):
        decode_secret("not base32!")


def test_encode_secret():
    assert encode_secret(b"test") == "ORSXG5A="
    assert decode_secret(encode_secret(b"\x00\xffabc")) == b"\x00\xffabc"
