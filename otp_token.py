"""
OTP CLI - token generation (RFC 4226 / RFC 6238) and formatting
"""

import base64
import binascii
import hashlib
import hmac
import struct
import time
from datetime import datetime, timezone

from otp_errors import InvalidSecret

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
NANOSECOND = 1_000_000_000

# HOTP truncation yields at most 31 bits, so never more than 8 useful digits
MAX_DIGITS = 8

FORMATTER_GOOGLE_AUTHENTICATOR = "google-authenticator"
FORMATTER_DEFAULT = "default"


# ==================== Secrets ====================

def normalize_secret(secret: str) -> str:
    """Strip spaces, uppercase and pad a base32 secret"""
    secret_clean = secret.replace(" ", "").upper()
    padding = 8 - (len(secret_clean) % 8)
    if padding != 8:
        secret_clean += "=" * padding
    return secret_clean


def decode_secret(secret: str) -> bytes:
    """Decode a base32 secret, raising InvalidSecret when it is not valid"""
    secret_clean = normalize_secret(secret)
    if not secret_clean:
        raise InvalidSecret("Invalid secret key format: secret is empty")
    try:
        return base64.b32decode(secret_clean)
    except (binascii.Error, ValueError) as e:
        raise InvalidSecret(f"Invalid secret key format: {e}") from e


def is_valid_base32(secret: str) -> bool:
    try:
        decode_secret(secret)
    except InvalidSecret:
        return False
    return True


def encode_secret(raw: bytes) -> str:
    return base64.b32encode(raw).decode("ascii")


# ==================== HOTP / TOTP ====================

def hotp(secret: bytes, digits: int, counter: int) -> int:
    """Generate HOTP token (RFC 4226)

    The modulus is 10^min(digits, 8); digits <= 0 always yields 0.
    """
    counter_bytes = struct.pack(">Q", counter)
    hmac_hash = hmac.new(secret, counter_bytes, hashlib.sha1).digest()

    # Dynamic truncation
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack(">I", hmac_hash[offset:offset + 4])[0] & 0x7FFFFFFF

    return truncated % (10 ** max(0, min(digits, MAX_DIGITS)))


def unix_nanoseconds(now: datetime | int | None = None) -> int:
    """Nanoseconds since the epoch, with exact integer arithmetic

    Naive datetimes are taken as UTC. An int is returned unchanged.
    """
    if now is None:
        return time.time_ns()
    if isinstance(now, int):
        return now
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    delta = now - EPOCH
    seconds = delta.days * 86400 + delta.seconds
    return seconds * NANOSECOND + delta.microseconds * 1000


def totp_counter(now: datetime | int | None, interval: int) -> int:
    return unix_nanoseconds(now) // (interval * NANOSECOND)


def totp(secret: bytes, now: datetime | int | None, digits: int, interval: int) -> int:
    """Generate TOTP token (RFC 6238) for the given instant"""
    return hotp(secret, digits, totp_counter(now, interval))


def get_time_remaining(interval: int = 30, now: datetime | int | None = None) -> int:
    """Get seconds remaining until next TOTP rotation"""
    seconds = unix_nanoseconds(now) // NANOSECOND
    return interval - (seconds % interval)


# ==================== Formatting ====================

def format_token(digits: int, token: int) -> str:
    """Left-pad token with zeros to digits characters, never truncating"""
    return str(token).zfill(digits)


def token_formatter(formatter: str, digits: int, token: int) -> str:
    if formatter == FORMATTER_GOOGLE_AUTHENTICATOR:
        return format_token(digits, token)
    if formatter == FORMATTER_DEFAULT:
        return str(token)
    raise ValueError(f"Unknown token formatter: {formatter}")
