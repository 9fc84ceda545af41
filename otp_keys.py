"""
OTP CLI - key records and the operations shared by the CLI, backup and import
"""

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import IntEnum

from otp_errors import InvalidKeyError, KeyExistsError, KeyNotFound
from otp_store import MetadataStore, SecretStore, debug_log
from otp_token import (
    FORMATTER_GOOGLE_AUTHENTICATOR,
    decode_secret,
    get_time_remaining,
    hotp,
    token_formatter,
    totp,
)

DEFAULT_DIGITS = 6
DEFAULT_INTERVAL = 30
DEFAULT_COUNTER = 1
MAX_KEY_DIGITS = 10


class KeyType(IntEnum):
    HOTP = 0
    TOTP = 1


@dataclass
class Key:
    name: str
    type: KeyType = KeyType.TOTP
    digits: int = DEFAULT_DIGITS
    interval: int = DEFAULT_INTERVAL
    counter: int = DEFAULT_COUNTER

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = int(self.type)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Key":
        try:
            return cls(
                name=data["name"],
                type=KeyType(data.get("type", KeyType.TOTP)),
                digits=int(data.get("digits", DEFAULT_DIGITS)),
                interval=int(data.get("interval", DEFAULT_INTERVAL)),
                counter=int(data.get("counter", DEFAULT_COUNTER)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidKeyError(f"Invalid key record: {e}") from e

    def __str__(self) -> str:
        return self.name

    def verbose_string(self) -> str:
        return f"{self.name} \t {self.digits} digits every {self.interval} seconds"


@dataclass
class Token:
    value: str
    expires_in: int | None


def _to_positive_int(field: str, value, maximum: int | None = None) -> int:
    """Accept ints or decimal strings (as found in native backups)"""
    if isinstance(value, bool):
        raise InvalidKeyError(f"Invalid {field}: {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise InvalidKeyError(f"Invalid {field}: {value!r}") from e
    if number <= 0:
        raise InvalidKeyError(f"Invalid {field}: must be positive, got {number}")
    if maximum is not None and number > maximum:
        raise InvalidKeyError(f"Invalid {field}: at most {maximum}, got {number}")
    return number


class KeyStore:
    """Key metadata and secrets addressed together by key name"""

    def __init__(self, metadata: MetadataStore, secrets: SecretStore):
        self.metadata = metadata
        self.secrets = secrets

    def names(self) -> list[str]:
        return self.metadata.list()

    def exists(self, name: str) -> bool:
        return name in self.metadata.list()

    def get(self, name: str) -> Key:
        return Key.from_dict(self.metadata.get(name))

    def unlock(self):
        """Open the secret store now rather than on first secret access"""
        self.secrets.unlock()

    def get_secret(self, name: str) -> bytes:
        return self.secrets.get(name)

    def save(self, key: Key):
        self.metadata.put(key.name, key.to_dict())

    def add(
        self,
        name: str,
        secret: str,
        digits=None,
        interval=None,
        key_type: KeyType = KeyType.TOTP,
    ) -> Key:
        """Add (or replace) a key from a base32 secret

        digits and interval may be ints or decimal strings; None keeps the
        defaults. Raises InvalidSecret or InvalidKeyError.
        """
        if not name:
            raise InvalidKeyError("Key name cannot be empty")

        key = Key(name=name, type=key_type)
        if digits is not None:
            key.digits = _to_positive_int("digits", digits, MAX_KEY_DIGITS)
        if interval is not None:
            key.interval = _to_positive_int("interval", interval)

        raw_secret = decode_secret(secret)
        self.secrets.set(name, raw_secret)
        self.save(key)
        debug_log(f"Added key {key.to_dict()}")
        return key

    def remove(self, name: str):
        if not self.exists(name):
            raise KeyNotFound(name)
        try:
            self.secrets.delete(name)
        except KeyNotFound:
            debug_log(f"Key '{name}' is not present in secret store, skipping deletion")
        self.metadata.delete(name)
        debug_log(f"Removed key '{name}'")

    def rename(self, old: str, new: str) -> Key:
        if not new:
            raise InvalidKeyError("Key name cannot be empty")
        key = self.get(old)
        if new != old and self.exists(new):
            raise KeyExistsError(new)
        self.secrets.rename(old, new)
        self.metadata.delete(old)
        key.name = new
        self.save(key)
        debug_log(f"Renamed key '{old}' to '{new}'")
        return key

    def generate(
        self,
        name: str,
        now: datetime | int | None = None,
        formatter: str = FORMATTER_GOOGLE_AUTHENTICATOR,
    ) -> Token:
        """Generate the current token; HOTP keys advance their counter"""
        key = self.get(name)
        secret = self.get_secret(name)

        if key.type == KeyType.TOTP:
            value = totp(secret, now, key.digits, key.interval)
            expires_in = get_time_remaining(key.interval, now)
        else:
            value = hotp(secret, key.digits, key.counter)
            key.counter += 1
            self.save(key)
            expires_in = None

        return Token(token_formatter(formatter, key.digits, value), expires_in)

    def dump(self, name: str | None = None) -> str:
        """JSON of one key record, or of all of them; secrets are never included"""
        if name is not None:
            return json.dumps(self.get(name).to_dict())
        return json.dumps([self.get(n).to_dict() for n in self.names()])
