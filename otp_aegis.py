"""
OTP CLI - import from Aegis Authenticator vault exports

Aegis stores its vault as JSON:

    {
        "version": 1,
        "header": {
            "slots": [...],     # null for plain exports
            "params": {...}     # null for plain exports
        },
        "db": "..."             # base64 ciphertext, or the plain JSON object
    }

An encrypted vault is opened in two AES-256-GCM steps. A password slot
holds the master key wrapped with a key derived by scrypt from the user
password and the slot's own salt/n/r/p. The master key then decrypts the
database. In both steps the GCM tag is stored in a separate hex field and
must be appended to the ciphertext before decryption.

See https://github.com/beemdevelopment/Aegis/blob/master/docs/vault.md
"""

import base64
import binascii
import json
import math
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from otp_errors import (
    DatabaseDecryptError,
    InvalidKeyError,
    InvalidSecret,
    KeyDerivationError,
    MasterKeyUnwrapError,
    NoPasswordSlot,
    ParseError,
)
from otp_store import debug_log
from otp_token import is_valid_base32

SLOT_TYPE_PASSWORD = 1

ENTRY_TYPE_TOTP = "totp"
ENTRY_TYPE_HOTP = "hotp"
ENTRY_TYPE_STEAM = "steam"

KEY_SIZE = 32


# ==================== Typed field helpers ====================

def _number(value) -> int | None:
    """JSON number as int; None for anything else (booleans included)"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def _string(value, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _object(value, what: str) -> dict:
    if not isinstance(value, dict):
        raise ParseError(f"Invalid vault structure: {what} is not an object")
    return value


# ==================== Vault envelope ====================

@dataclass
class Params:
    nonce: str = ""
    tag: str = ""

    @classmethod
    def from_dict(cls, data) -> "Params | None":
        if data is None:
            return None
        data = _object(data, "params")
        return cls(nonce=_string(data.get("nonce")), tag=_string(data.get("tag")))


@dataclass
class Slot:
    type: int
    uuid: str = ""
    key: str = ""
    key_params: Params | None = None
    n: int = 0
    r: int = 0
    p: int = 0
    salt: str = ""

    @classmethod
    def from_dict(cls, data) -> "Slot":
        data = _object(data, "slot")
        slot_type = _number(data.get("type"))
        return cls(
            type=-1 if slot_type is None else slot_type,
            uuid=_string(data.get("uuid")),
            key=_string(data.get("key")),
            key_params=Params.from_dict(data.get("key_params")),
            n=_number(data.get("n")) or 0,
            r=_number(data.get("r")) or 0,
            p=_number(data.get("p")) or 0,
            salt=_string(data.get("salt")),
        )


@dataclass
class Header:
    slots: list[Slot] | None = None
    params: Params | None = None


@dataclass
class VaultEnvelope:
    version: int
    header: Header
    db: object

    @property
    def is_encrypted(self) -> bool:
        return bool(self.header.slots)


@dataclass
class Found:
    slot: Slot


class _NotFound:
    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFound()
SlotLookup = Found | _NotFound


def parse_vault(data: bytes | str) -> VaultEnvelope:
    """Parse the vault JSON envelope without touching the database"""
    try:
        raw = json.loads(data)
    except ValueError as e:
        raise ParseError(f"Failed to parse vault JSON: {e}") from e

    raw = _object(raw, "vault")
    header = raw.get("header")
    header = {} if header is None else _object(header, "header")

    slots = header.get("slots")
    if slots is not None:
        if not isinstance(slots, list):
            raise ParseError("Invalid vault structure: slots is not a list")
        slots = [Slot.from_dict(s) for s in slots]

    return VaultEnvelope(
        version=_number(raw.get("version")) or 0,
        header=Header(slots=slots, params=Params.from_dict(header.get("params"))),
        db=raw.get("db"),
    )


# ==================== Decrypted database ====================

@dataclass
class TotpInfo:
    secret: str | None
    digits: int | None = None
    period: int | None = None
    secret_issue: str | None = None


@dataclass
class HotpInfo:
    secret: str | None
    digits: int | None = None
    counter: int | None = None
    secret_issue: str | None = None


@dataclass
class SteamInfo:
    secret: str | None
    digits: int | None = None
    secret_issue: str | None = None


@dataclass
class OtherInfo:
    secret: str | None
    digits: int | None = None
    secret_issue: str | None = None


EntryInfo = TotpInfo | HotpInfo | SteamInfo | OtherInfo


def parse_info(entry_type: str, info) -> EntryInfo:
    if not isinstance(info, dict):
        info = {}

    secret = info.get("secret")
    secret_issue = None
    if "secret" not in info:
        secret_issue = "no secret found"
    elif not isinstance(secret, str):
        secret_issue = "invalid secret type"
        secret = None

    digits = _number(info.get("digits"))
    if entry_type == ENTRY_TYPE_TOTP:
        return TotpInfo(secret, digits, _number(info.get("period")), secret_issue)
    if entry_type == ENTRY_TYPE_HOTP:
        return HotpInfo(secret, digits, _number(info.get("counter")), secret_issue)
    if entry_type == ENTRY_TYPE_STEAM:
        return SteamInfo(secret, digits, secret_issue)
    return OtherInfo(secret, digits, secret_issue)


@dataclass
class Entry:
    type: str
    uuid: str
    name: str
    issuer: str
    info: EntryInfo
    note: str = ""
    favorite: bool = False
    groups: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data) -> "Entry":
        data = _object(data, "entry")
        entry_type = _string(data.get("type"))
        groups = data.get("groups")
        return cls(
            type=entry_type,
            uuid=_string(data.get("uuid")),
            name=_string(data.get("name")),
            issuer=_string(data.get("issuer")),
            info=parse_info(entry_type, data.get("info")),
            note=_string(data.get("note")),
            favorite=data.get("favorite") is True,
            groups=[g for g in groups if isinstance(g, str)] if isinstance(groups, list) else [],
        )

    @property
    def display_name(self) -> str:
        if self.issuer:
            return f"{self.issuer} - {self.name}"
        return self.name


@dataclass
class Group:
    uuid: str
    name: str


@dataclass
class VaultDB:
    version: int
    entries: list[Entry]
    groups: list[Group]

    @classmethod
    def from_dict(cls, data) -> "VaultDB":
        data = _object(data, "database")
        entries = data.get("entries") or []
        groups = data.get("groups") or []
        if not isinstance(entries, list) or not isinstance(groups, list):
            raise ParseError("Invalid vault structure: entries and groups must be lists")
        return cls(
            version=_number(data.get("version")) or 0,
            entries=[Entry.from_dict(e) for e in entries],
            groups=[
                Group(uuid=_string(g.get("uuid")), name=_string(g.get("name")))
                for g in groups
                if isinstance(g, dict)
            ],
        )


def parse_plain_vault(envelope: VaultEnvelope) -> VaultDB:
    if envelope.is_encrypted:
        raise ParseError("Vault is encrypted, a password is needed to open it")
    if not isinstance(envelope.db, dict):
        raise ParseError("Plain vault database should be a JSON object")
    return VaultDB.from_dict(envelope.db)


# ==================== Crypto ====================

def find_password_slot(slots: list[Slot] | None) -> SlotLookup:
    for slot in slots or []:
        if slot.type == SLOT_TYPE_PASSWORD:
            return Found(slot)
    return NOT_FOUND


def derive_slot_key(password: str, slot: Slot) -> bytes:
    """scrypt(password, salt) with the slot's own cost parameters"""
    try:
        salt = bytes.fromhex(slot.salt)
    except ValueError as e:
        raise KeyDerivationError(f"Failed to derive key: invalid salt: {e}") from e

    try:
        kdf = Scrypt(salt=salt, length=KEY_SIZE, n=slot.n, r=slot.r, p=slot.p)
        return kdf.derive(password.encode())
    except (ValueError, TypeError, MemoryError) as e:
        raise KeyDerivationError(f"Failed to derive key: scrypt failed: {e}") from e


def reconstruct_ciphertext(ciphertext: bytes, tag: str) -> bytes:
    """AEAD input for Aegis: the tag goes after the ciphertext"""
    return ciphertext + bytes.fromhex(tag)


def _open(key: bytes, nonce: str, ciphertext: bytes, tag: str) -> bytes:
    return AESGCM(key).decrypt(bytes.fromhex(nonce), reconstruct_ciphertext(ciphertext, tag), None)


def unwrap_master_key(kek: bytes, slot: Slot) -> bytes:
    if slot.key_params is None:
        raise MasterKeyUnwrapError("Failed to decrypt master key: slot has no key parameters")
    try:
        wrapped = bytes.fromhex(slot.key)
        master_key = _open(kek, slot.key_params.nonce, wrapped, slot.key_params.tag)
    except InvalidTag as e:
        raise MasterKeyUnwrapError(
            "Failed to decrypt master key: wrong password or tampered vault"
        ) from e
    except ValueError as e:
        raise MasterKeyUnwrapError(f"Failed to decrypt master key: {e}") from e
    if len(master_key) != KEY_SIZE:
        raise MasterKeyUnwrapError(
            f"Failed to decrypt master key: expected {KEY_SIZE} bytes, got {len(master_key)}"
        )
    return master_key


def decrypt_database(master_key: bytes, envelope: VaultEnvelope) -> bytes:
    params = envelope.header.params
    if params is None:
        raise DatabaseDecryptError("Failed to decrypt database: missing header params")
    if not isinstance(envelope.db, str):
        raise DatabaseDecryptError("Failed to decrypt database: encrypted database should be a string")
    try:
        ciphertext = base64.b64decode(envelope.db, validate=True)
        return _open(master_key, params.nonce, ciphertext, params.tag)
    except InvalidTag as e:
        raise DatabaseDecryptError("Failed to decrypt database: authentication failed") from e
    except (binascii.Error, ValueError) as e:
        raise DatabaseDecryptError(f"Failed to decrypt database: {e}") from e


def decrypt_vault(envelope: VaultEnvelope, password: str) -> VaultDB:
    if not envelope.is_encrypted:
        raise ParseError("Vault is not encrypted")

    lookup = find_password_slot(envelope.header.slots)
    if not isinstance(lookup, Found):
        raise NoPasswordSlot()

    kek = derive_slot_key(password, lookup.slot)
    master_key = unwrap_master_key(kek, lookup.slot)
    debug_log(f"Unlocked vault with slot {lookup.slot.uuid}")
    plaintext = decrypt_database(master_key, envelope)

    try:
        return VaultDB.from_dict(json.loads(plaintext))
    except ValueError as e:
        raise ParseError(f"Failed to parse decrypted database: {e}") from e


# ==================== Import ====================

@dataclass
class SkippedEntry:
    name: str
    reason: str


@dataclass
class ImportReport:
    imported: list[str] = field(default_factory=list)
    skipped: list[SkippedEntry] = field(default_factory=list)

    def skip(self, name: str, reason: str):
        debug_log(f"Skipping entry '{name}' - {reason}")
        self.skipped.append(SkippedEntry(name, reason))


def import_entries(keys, entries: list[Entry]) -> ImportReport:
    """Add every usable entry; bad entries are recorded and skipped"""
    report = ImportReport()

    for entry in entries:
        info = entry.info
        name = entry.display_name
        if info.secret_issue is not None:
            report.skip(name, info.secret_issue)
            continue
        if not is_valid_base32(info.secret):
            report.skip(name, "invalid base32 secret")
            continue

        interval = info.period if isinstance(info, TotpInfo) else None

        debug_log(f"Adding entry: {name}, digits={info.digits}, interval={interval}")
        try:
            keys.add(name, info.secret, digits=info.digits, interval=interval)
        except (InvalidSecret, InvalidKeyError) as e:
            report.skip(name, f"failed to add: {e}")
            continue

        debug_log(f"Successfully imported entry: {name}")
        report.imported.append(name)

    return report


def load_vault(data: bytes | str, password: str | None) -> VaultDB:
    envelope = parse_vault(data)
    if envelope.is_encrypted:
        if password is None:
            raise MasterKeyUnwrapError("Vault is encrypted, a password is needed to open it")
        return decrypt_vault(envelope, password)
    return parse_plain_vault(envelope)


def restore_vault(keys, data: bytes | str, password: str | None) -> ImportReport:
    """Open the vault (strict) then import its entries (best-effort)"""
    db = load_vault(data, password)
    keys.unlock()
    return import_entries(keys, db.entries)
