"""Session-keyed signer storage.

The orchestrator never persists signers itself; callers inject a KeyStore.
`EncryptedFileKeyStore` keeps each private key encrypted at rest with
AES-256-GCM under an argon2id-derived key.
"""

from __future__ import annotations

import base64
import contextlib
import json
import os
import pathlib
import secrets
import stat
from datetime import datetime, timezone
from typing import Any, Iterator, Protocol

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import is_hex_address
from .errors import KeyStoreError
from .signer import Signer

KEY_STORE_VERSION = 1
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536
ARGON2_PARALLELISM = 1
ARGON2_HASH_LEN = 32


class KeyStore(Protocol):
    def get(self, session: str) -> Signer | None: ...

    def set(self, session: str, signer: Signer) -> None: ...


class MemoryKeyStore:
    def __init__(self) -> None:
        self._signers: dict[str, Signer] = {}

    def get(self, session: str) -> Signer | None:
        return self._signers.get(session)

    def set(self, session: str, signer: Signer) -> None:
        self._signers[session] = signer


def _derive_aes_key(passphrase: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


def encrypt_private_key(private_key_hex: str, passphrase: str) -> dict[str, Any]:
    private_key_bytes = bytes.fromhex(private_key_hex)
    salt = secrets.token_bytes(16)
    nonce = secrets.token_bytes(12)
    cipher = AESGCM(_derive_aes_key(passphrase, salt))
    ciphertext = cipher.encrypt(nonce, private_key_bytes, None)
    return {
        "version": KEY_STORE_VERSION,
        "enc": "aes-256-gcm",
        "kdf": "argon2id",
        "kdfParams": {
            "timeCost": ARGON2_TIME_COST,
            "memoryCost": ARGON2_MEMORY_COST,
            "parallelism": ARGON2_PARALLELISM,
            "hashLen": ARGON2_HASH_LEN,
        },
        "saltB64": base64.b64encode(salt).decode("ascii"),
        "nonceB64": base64.b64encode(nonce).decode("ascii"),
        "ciphertextB64": base64.b64encode(ciphertext).decode("ascii"),
    }


def _decode_crypto_payload(crypto: Any) -> tuple[bytes, bytes, bytes]:
    if not isinstance(crypto, dict):
        raise KeyStoreError("Key store entry missing crypto object.")
    missing = [k for k in ["enc", "kdf", "saltB64", "nonceB64", "ciphertextB64"] if k not in crypto]
    if missing:
        raise KeyStoreError(f"Key store entry crypto payload missing fields: {', '.join(missing)}")
    if crypto.get("enc") != "aes-256-gcm" or crypto.get("kdf") != "argon2id":
        raise KeyStoreError("Key store entry crypto algorithm metadata is invalid.")
    try:
        salt = base64.b64decode(str(crypto["saltB64"]))
        nonce = base64.b64decode(str(crypto["nonceB64"]))
        ciphertext = base64.b64decode(str(crypto["ciphertextB64"]))
    except Exception as exc:
        raise KeyStoreError("Key store crypto payload is not valid base64.") from exc
    if len(salt) != 16 or len(nonce) != 12 or len(ciphertext) < 16:
        raise KeyStoreError("Key store crypto payload has invalid lengths.")
    return salt, nonce, ciphertext


def decrypt_private_key(entry: dict[str, Any], passphrase: str) -> str:
    salt, nonce, ciphertext = _decode_crypto_payload(entry.get("crypto"))
    cipher = AESGCM(_derive_aes_key(passphrase, salt))
    try:
        return cipher.decrypt(nonce, ciphertext, None).hex()
    except InvalidTag as exc:
        raise KeyStoreError("Unable to decrypt key store entry (wrong passphrase or corrupted data).") from exc


class EncryptedFileKeyStore:
    """Per-session signers in `<app_dir>/sessions.json` (0600, directory 0700)."""

    def __init__(self, app_dir: pathlib.Path, passphrase: str):
        if not passphrase:
            raise KeyStoreError("Key store passphrase must not be empty.")
        self._app_dir = app_dir
        self._path = app_dir / "sessions.json"
        self._passphrase = passphrase

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def _ensure_app_dir(self) -> None:
        self._app_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        if os.name != "nt":
            os.chmod(self._app_dir, 0o700)

    def _assert_secure_permissions(self, path: pathlib.Path, expected_mode: int, kind: str) -> None:
        if os.name == "nt" or not path.exists():
            return
        mode = stat.S_IMODE(path.stat().st_mode)
        if mode != expected_mode:
            raise KeyStoreError(
                f"Unsafe {kind} permissions for '{path}'. Expected {oct(expected_mode)} owner-only permissions."
            )

    def _load(self) -> dict[str, Any]:
        self._assert_secure_permissions(self._app_dir, 0o700, "directory")
        if not self._path.exists():
            return {"version": KEY_STORE_VERSION, "sessions": {}}
        self._assert_secure_permissions(self._path, 0o600, "key store file")
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as exc:
            raise KeyStoreError(f"Key store '{self._path}' is not valid JSON.") from exc
        if not isinstance(data, dict) or not isinstance(data.get("sessions"), dict):
            raise KeyStoreError(f"Key store '{self._path}' has an invalid shape.")
        if data.get("version") != KEY_STORE_VERSION:
            raise KeyStoreError(f"Unsupported key store version: {data.get('version')!r}.")
        return data

    def _save(self, data: dict[str, Any]) -> None:
        self._ensure_app_dir()
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        if os.name != "nt":
            os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self._path)

    def get(self, session: str) -> Signer | None:
        entry = self._load()["sessions"].get(session)
        if entry is None:
            return None
        if not isinstance(entry, dict):
            raise KeyStoreError(f"Key store entry for session '{session}' is not an object.")
        address = entry.get("address")
        if not isinstance(address, str) or not is_hex_address(address):
            raise KeyStoreError(f"Key store entry for session '{session}' has an invalid address.")
        signer = Signer.from_private_key(decrypt_private_key(entry, self._passphrase))
        if signer.address.lower() != address.lower():
            raise KeyStoreError(f"Key store entry for session '{session}' does not match its stored address.")
        return signer

    def set(self, session: str, signer: Signer) -> None:
        data = self._load()
        data["sessions"][session] = {
            "address": signer.address,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "crypto": encrypt_private_key(signer.private_key_hex, self._passphrase),
        }
        self._save(data)


@contextlib.contextmanager
def signer_lock(app_dir: pathlib.Path, address: str) -> Iterator[None]:
    """Hold an exclusive lock on `<app_dir>/<address>.lock` across processes.

    Blocks until any other process running for the same signer releases it.
    """
    try:
        app_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(app_dir / f"{address.lower()}.lock", os.O_WRONLY | os.O_CREAT, 0o600)
    except OSError as exc:
        raise KeyStoreError(f"Unable to open signer lock in '{app_dir}': {exc}") from exc
    try:
        if os.name == "nt":
            import msvcrt

            msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
        else:
            import fcntl

            fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        # Closing the descriptor releases the lock.
        os.close(fd)
