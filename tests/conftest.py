import base64
import json
import os
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

import otp_store
from otp_errors import KeyNotFound
from otp_keys import KeyStore

DATA_DIR = Path(__file__).parent / "data"
TAG_SIZE = 16


class MemoryMetadataStore:
    def __init__(self):
        self.keys = {}

    def get(self, name):
        if name not in self.keys:
            raise KeyNotFound(name)
        return dict(self.keys[name])

    def put(self, name, value):
        self.keys[name] = dict(value)

    def delete(self, name):
        if name not in self.keys:
            raise KeyNotFound(name)
        del self.keys[name]

    def list(self):
        return sorted(self.keys)

    def __contains__(self, name):
        return name in self.keys


class MemorySecretStore:
    def __init__(self):
        self.secrets = {}

    def get(self, name):
        if name not in self.secrets:
            raise KeyNotFound(name)
        return self.secrets[name]

    def set(self, name, value):
        self.secrets[name] = value

    def delete(self, name):
        if name not in self.secrets:
            raise KeyNotFound(name)
        del self.secrets[name]

    def unlock(self):
        pass

    def rename(self, old, new):
        if old not in self.secrets:
            raise KeyNotFound(old)
        self.secrets[new] = self.secrets.pop(old)


@pytest.fixture
def keys():
    return KeyStore(MemoryMetadataStore(), MemorySecretStore())


@pytest.fixture
def otp_home(tmp_path, monkeypatch):
    """Isolated data/runtime dirs and a fast master key derivation"""
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path / "run"))
    (tmp_path / "run").mkdir()
    monkeypatch.setattr(otp_store, "MASTER_KDF_ITERATIONS", 1000)
    return tmp_path


@pytest.fixture
def plain_vault_bytes():
    return (DATA_DIR / "aegis_plain.json").read_bytes()


@pytest.fixture
def plain_vault_db(plain_vault_bytes):
    return json.loads(plain_vault_bytes)["db"]


def _split_tag(sealed: bytes) -> tuple[bytes, bytes]:
    return sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]


@pytest.fixture
def make_encrypted_vault():
    """Build an Aegis-style encrypted vault with a single password slot

    Small scrypt parameters keep the tests fast; the vault records them,
    so decryption uses the same ones.
    """
    def factory(db, password, n=1024, r=8, p=1, slots_before=(), key_bits=256):
        salt = os.urandom(32)
        kek = Scrypt(salt=salt, length=32, n=n, r=r, p=p).derive(password.encode())
        master_key = AESGCM.generate_key(bit_length=key_bits)

        key_nonce = os.urandom(12)
        wrapped, key_tag = _split_tag(AESGCM(kek).encrypt(key_nonce, master_key, None))

        plaintext = db if isinstance(db, bytes) else json.dumps(db).encode()
        db_nonce = os.urandom(12)
        ciphertext, db_tag = _split_tag(AESGCM(master_key).encrypt(db_nonce, plaintext, None))

        slot = {
            "type": 1,
            "uuid": "a8325752-c1be-458a-9b3e-5e0a8154d9ec",
            "key": wrapped.hex(),
            "key_params": {"nonce": key_nonce.hex(), "tag": key_tag.hex()},
            "n": n,
            "r": r,
            "p": p,
            "salt": salt.hex(),
            "repaired": True,
        }
        vault = {
            "version": 1,
            "header": {
                "slots": list(slots_before) + [slot],
                "params": {"nonce": db_nonce.hex(), "tag": db_tag.hex()},
            },
            "db": base64.b64encode(ciphertext).decode(),
        }
        return vault

    return factory
