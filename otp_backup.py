"""
OTP CLI - native encrypted backups and the restore entry point

A backup is a '.'-joined list of sections, one per key. Each section is
base64(nonce || AES-256-GCM(ciphertext || tag)) over the JSON record

    {"name": ..., "digits": "6", "interval": "30", "secret": "<base32>"}

Sections are independent: each one is decrypted on its own.
"""

import base64
import binascii
import json
import os
from dataclasses import asdict, dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

import otp_aegis
from otp_errors import DecryptError, UnsupportedFormat
from otp_keys import KeyStore
from otp_store import debug_log
from otp_token import encode_secret

BACKUP_FORMAT_NATIVE = "native"
BACKUP_FORMAT_AEGIS = "aegis"
BACKUP_FORMATS = (BACKUP_FORMAT_NATIVE, BACKUP_FORMAT_AEGIS)
# accepted on the command line as a synonym for aegis
BACKUP_FORMAT_ALIASES = {"vault": BACKUP_FORMAT_AEGIS}

SECTION_SEPARATOR = "."
NONCE_SIZE = 12
KDF_ITERATIONS = 1000


@dataclass
class BackupRecord:
    name: str
    digits: str = ""
    interval: str = ""
    secret: str = ""


# ==================== Codec ====================

def derive_key(password: str) -> bytes:
    """PBKDF2-HMAC-SHA256, empty salt, 1000 iterations, 32 bytes

    Existing backups were written with exactly these parameters; the
    missing salt means equal passwords give equal keys.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"",
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password.encode())


def encrypt_record(record: BackupRecord, password: str) -> str:
    encoded = json.dumps(asdict(record), separators=(",", ":")).encode()
    nonce = os.urandom(NONCE_SIZE)
    sealed = nonce + AESGCM(derive_key(password)).encrypt(nonce, encoded, None)
    return base64.b64encode(sealed).decode("ascii")


def decrypt_record(value: str, password: str) -> BackupRecord:
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptError(f"Invalid backup section encoding: {e}") from e

    if len(decoded) < NONCE_SIZE:
        raise DecryptError("Invalid nonce size, cannot decrypt supplied value")

    nonce, ciphertext = decoded[:NONCE_SIZE], decoded[NONCE_SIZE:]
    try:
        plaintext = AESGCM(derive_key(password)).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise DecryptError("Cannot decrypt backup: wrong password or corrupted data") from e

    try:
        data = json.loads(plaintext)
    except ValueError as e:
        raise DecryptError(f"Invalid backup record: {e}") from e
    if not isinstance(data, dict):
        raise DecryptError("Invalid backup record: not a JSON object")

    fields = {}
    for field in ("name", "digits", "interval", "secret"):
        value = data.get(field, "")
        if not isinstance(value, str):
            raise DecryptError(f"Invalid backup record: '{field}' is not a string")
        fields[field] = value
    return BackupRecord(**fields)


# ==================== Backup ====================

def backup_key(keys: KeyStore, name: str, password: str) -> str:
    debug_log(f"Retrieving and encrypting key '{name}' for backup")
    key = keys.get(name)
    record = BackupRecord(
        name=key.name,
        digits=str(key.digits),
        interval=str(key.interval),
        secret=encode_secret(keys.get_secret(name)),
    )
    return encrypt_record(record, password)


def backup_all(keys: KeyStore, password: str) -> str:
    """Encrypt every stored key; any failure aborts the whole backup"""
    sections = [backup_key(keys, name, password) for name in keys.names()]
    return SECTION_SEPARATOR.join(sections)


# ==================== Restore ====================

def restore_native(keys: KeyStore, data: str, password: str) -> list[str]:
    """Decrypt and add each section in order, stopping at the first failure

    Keys added before a failing section are kept.
    """
    restored = []
    for section in data.strip().split(SECTION_SEPARATOR):
        record = decrypt_record(section, password)
        keys.add(
            record.name,
            record.secret,
            digits=record.digits or None,
            interval=record.interval or None,
        )
        debug_log(f"Restored key '{record.name}'")
        restored.append(record.name)
    return restored


def resolve_format(fmt: str) -> str:
    fmt = BACKUP_FORMAT_ALIASES.get(fmt, fmt)
    if fmt not in BACKUP_FORMATS:
        raise UnsupportedFormat(fmt)
    return fmt


def restore(keys: KeyStore, data: str | bytes, password: str, fmt: str = BACKUP_FORMAT_NATIVE):
    """Restore from a native backup (strict) or an Aegis vault (best-effort)

    Returns the restored names for native backups and an ImportReport for
    vaults.
    """
    fmt = resolve_format(fmt)
    if fmt == BACKUP_FORMAT_AEGIS:
        return otp_aegis.restore_vault(keys, data, password)

    if isinstance(data, bytes):
        try:
            data = data.decode("ascii")
        except UnicodeDecodeError as e:
            raise DecryptError(f"Invalid backup data: {e}") from e
    return restore_native(keys, data, password)
