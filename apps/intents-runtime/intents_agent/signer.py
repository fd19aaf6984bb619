"""Signing identity: an EOA private key and its derived address."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field

from Crypto.Hash import keccak
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import KeyStoreError


def normalize_private_key_hex(value: str) -> str | None:
    stripped = value.strip()
    if stripped.startswith("0x"):
        stripped = stripped[2:]
    if re.fullmatch(r"[a-fA-F0-9]{64}", stripped):
        return stripped.lower()
    return None


def to_checksum_address(address: str) -> str:
    """EIP-55 mixed-case checksum encoding of a 0x address."""
    lowered = address.lower().removeprefix("0x")
    digest = keccak.new(digest_bits=256)
    digest.update(lowered.encode("ascii"))
    hashed = digest.hexdigest()
    return "0x" + "".join(ch.upper() if int(hashed[i], 16) >= 8 else ch for i, ch in enumerate(lowered))


def derive_address(private_key_hex: str) -> str:
    private_key_bytes = bytes.fromhex(private_key_hex)
    private_value = int.from_bytes(private_key_bytes, byteorder="big")
    # cryptography validates private key range for secp256k1.
    try:
        private_key = ec.derive_private_key(private_value, ec.SECP256K1())
    except ValueError as exc:
        raise KeyStoreError("Private key is outside the secp256k1 range.") from exc
    public_key_bytes = private_key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    digest = keccak.new(digest_bits=256)
    digest.update(public_key_bytes[1:])
    return to_checksum_address("0x" + digest.digest()[-20:].hex())


@dataclass(frozen=True)
class Signer:
    address: str
    private_key_hex: str = field(repr=False)

    @classmethod
    def from_private_key(cls, value: str) -> "Signer":
        normalized = normalize_private_key_hex(value)
        if normalized is None:
            raise KeyStoreError("Private key must be 32 bytes of hex.")
        return cls(address=derive_address(normalized), private_key_hex=normalized)

    @classmethod
    def generate(cls) -> "Signer":
        while True:
            candidate = secrets.token_hex(32)
            try:
                return cls.from_private_key(candidate)
            except KeyStoreError:
                continue

    @property
    def key_for_cast(self) -> str:
        return "0x" + self.private_key_hex
