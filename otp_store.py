"""
OTP CLI - configuration, debug logging and on-disk stores

Two stores back the CLI:

    MetadataStore  plain JSON file, key name -> key parameters
    SecretStore    Fernet-encrypted JSON file, key name -> raw secret bytes

The secret store is locked with a master password (PBKDF2-HMAC-SHA256,
random salt) and remembers the password for a few minutes in a
user-private cache file so consecutive commands don't prompt again.
"""

import base64
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Callable

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from otp_errors import KeyNotFound, StoreError

APP_NAME = "otp-cli"
METADATA_FILENAME = "keys.json"
SECRETS_FILENAME = "secrets.json"

PASSWORD_CACHE_TTL = 300  # 5 minutes
MASTER_KDF_ITERATIONS = 480000

logger = logging.getLogger("otp")
logger.addHandler(logging.NullHandler())

# password_func(prompt, confirm) -> password
PasswordFunc = Callable[[str, bool], str]


# ==================== Debug logging ====================

def debug_enabled() -> bool:
    return "OTP_DEBUG" in os.environ


def setup_logging(debug: bool | None = None):
    """Send debug output to stderr when OTP_DEBUG is set"""
    if debug is None:
        debug = debug_enabled()
    if not debug:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[debug] %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)


def debug_log(message: str):
    logger.debug(message)


# ==================== Paths ====================

def get_data_dir() -> Path:
    """Get the directory holding the key and secret files"""
    # Use XDG_DATA_HOME or fallback to ~/.local/share
    xdg_data = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(xdg_data) / APP_NAME


def get_storage_paths(db: str | None = None) -> tuple[Path, Path]:
    """Metadata and secrets file paths; --db overrides the metadata location"""
    if db:
        metadata_path = Path(db).expanduser()
    else:
        metadata_path = get_data_dir() / METADATA_FILENAME
    return metadata_path, metadata_path.with_name(SECRETS_FILENAME)


def _write_private(path: Path, payload: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)
    # Set restrictive permissions
    os.chmod(path, 0o600)


def _read_json(path: Path) -> dict:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise StoreError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise StoreError(f"Cannot read {path}: not a JSON object")
    return data


# ==================== Password Cache ====================

def get_cache_path() -> Path:
    """Get the path to the password cache file"""
    xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", "/tmp")
    return Path(xdg_runtime) / f"{APP_NAME}-{os.getuid()}.cache"


def get_cached_password() -> str | None:
    """Get cached password if still valid"""
    cache_path = get_cache_path()
    if not cache_path.exists():
        return None

    try:
        with open(cache_path, "r") as f:
            cache = json.load(f)
    except (OSError, ValueError) as e:
        debug_log(f"Ignoring unreadable password cache: {e}")
        return None

    if cache.get("expires", 0) > time.time():
        return cache.get("password")
    cache_path.unlink(missing_ok=True)
    return None


def set_cached_password(password: str):
    """Cache password for PASSWORD_CACHE_TTL seconds"""
    cache = {"password": password, "expires": time.time() + PASSWORD_CACHE_TTL}
    _write_private(get_cache_path(), cache)


def clear_cached_password():
    get_cache_path().unlink(missing_ok=True)


# ==================== Metadata Store ====================

class MetadataStore:
    """Key parameters by name, kept as a JSON object on disk"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        return _read_json(self.path).get("keys", {})

    def _save(self, keys: dict):
        _write_private(self.path, {"keys": keys})

    def get(self, name: str) -> dict:
        keys = self._load()
        if name not in keys:
            raise KeyNotFound(name)
        return keys[name]

    def put(self, name: str, value: dict):
        keys = self._load()
        keys[name] = value
        self._save(keys)

    def delete(self, name: str):
        keys = self._load()
        if name not in keys:
            raise KeyNotFound(name)
        del keys[name]
        self._save(keys)

    def list(self) -> list[str]:
        return sorted(self._load())

    def __contains__(self, name: str) -> bool:
        return name in self._load()


# ==================== Secret Store ====================

def derive_master_key(password: str, salt: bytes) -> bytes:
    """Derive the Fernet key protecting the secrets file"""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=MASTER_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


class SecretStore:
    """Raw secret bytes by name, in a Fernet-encrypted JSON file

    The file is decrypted once, on first access; password_func is only
    called at that point.
    """

    def __init__(self, path: Path, password_func: PasswordFunc):
        self.path = Path(path)
        self.password_func = password_func
        self._fernet: Fernet | None = None
        self._salt: bytes | None = None
        self._secrets: dict[str, str] | None = None

    def unlock(self) -> dict[str, str]:
        """Decrypt the secrets file, asking for the password on first use"""
        if self._secrets is not None:
            return self._secrets

        if not self.path.exists():
            debug_log(f"Creating secret store at {self.path}")
            password = self.password_func("Create master password: ", True)
            self._salt = os.urandom(16)
            self._fernet = Fernet(derive_master_key(password, self._salt))
            self._secrets = {}
            set_cached_password(password)
            return self._secrets

        stored = _read_json(self.path)
        password = self.password_func("Enter master password: ", False)
        try:
            self._salt = base64.b64decode(stored["salt"])
            self._fernet = Fernet(derive_master_key(password, self._salt))
            decrypted = self._fernet.decrypt(stored["data"].encode())
            secrets = json.loads(decrypted)
        except InvalidToken as e:
            clear_cached_password()
            raise StoreError("Invalid master password or corrupted secrets file") from e
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Corrupted secrets file {self.path}: {e}") from e

        self._secrets = secrets
        set_cached_password(password)
        return self._secrets

    def _save(self):
        data = json.dumps(self._secrets).encode()
        stored = {
            "salt": base64.b64encode(self._salt).decode(),
            "data": self._fernet.encrypt(data).decode(),
            "encrypted": True,
        }
        _write_private(self.path, stored)

    def get(self, name: str) -> bytes:
        secrets = self.unlock()
        if name not in secrets:
            raise KeyNotFound(name)
        return base64.b64decode(secrets[name])

    def set(self, name: str, value: bytes):
        secrets = self.unlock()
        secrets[name] = base64.b64encode(value).decode()
        self._save()

    def delete(self, name: str):
        secrets = self.unlock()
        if name not in secrets:
            raise KeyNotFound(name)
        del secrets[name]
        self._save()

    def rename(self, old: str, new: str):
        secrets = self.unlock()
        if old not in secrets:
            raise KeyNotFound(old)
        secrets[new] = secrets.pop(old)
        self._save()
