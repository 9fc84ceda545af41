"""
OTP CLI - error types shared by the token, store, backup and vault modules
"""


class OTPError(Exception):
    """Base class for every error the CLI reports to the user"""


# ==================== Keys & Storage ====================

class StoreError(OTPError):
    """Metadata or secret storage could not be read or written"""


class KeyNotFound(OTPError):
    def __init__(self, name: str):
        super().__init__(f"Key '{name}' not found")
        self.name = name


class KeyExistsError(OTPError):
    def __init__(self, name: str):
        super().__init__(f"Key '{name}' already exists")
        self.name = name


class InvalidSecret(OTPError):
    """Secret is not valid base32"""


class InvalidKeyError(OTPError):
    """Key parameters (digits, interval, name) are unusable"""


# ==================== Backup & Restore ====================

class UnsupportedFormat(OTPError):
    def __init__(self, fmt: str):
        super().__init__(f"Unsupported backup format: {fmt}")
        self.format = fmt


class DecryptError(OTPError):
    """A native backup section could not be decrypted"""


class VaultError(OTPError):
    """Base class for failures while opening an Aegis vault"""


class ParseError(VaultError):
    """Malformed vault JSON or structure"""


class NoPasswordSlot(VaultError):
    def __init__(self):
        super().__init__("No password slot found in vault")


class KeyDerivationError(VaultError):
    """Invalid salt encoding or scrypt parameters"""


class MasterKeyUnwrapError(VaultError):
    """Slot key could not be unwrapped: wrong password or tampered vault"""


class DatabaseDecryptError(VaultError):
    """Vault database could not be decrypted with the master key"""
