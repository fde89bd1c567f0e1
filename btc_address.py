"""
Base58-check reward address encoding for PoX.

The PoX contract stores a reward address as a (version, hash160) pair; these
helpers move between that pair and the legacy base58-check string form.
"""

from __future__ import annotations

from bitcoin.base58 import Base58Error, CBase58Data
from bitcoin.base58 import decode as b58decode

from pox_errors import InvalidAddress

HASH160_LENGTH = 20
# version byte + hash160 + 4-byte checksum
_RAW_ADDRESS_LENGTH = 1 + HASH160_LENGTH + 4


def decode_btc_address(address: str) -> tuple[int, bytes]:
    """Decode a base58-check address into (version byte, 20-byte hash)."""
    if not isinstance(address, str) or not address:
        raise InvalidAddress(address, "empty or not a string")

    try:
        raw = b58decode(address)
    except Base58Error as exc:
        raise InvalidAddress(address, str(exc)) from exc

    if len(raw) != _RAW_ADDRESS_LENGTH:
        raise InvalidAddress(
            address, f"payload is {len(raw)} bytes, expected {_RAW_ADDRESS_LENGTH}"
        )

    try:
        data = CBase58Data(address)
    except Base58Error as exc:
        raise InvalidAddress(address, "checksum mismatch") from exc

    return data.nVersion, data.to_bytes()


def encode_btc_address(version: int, hash160_bytes: bytes) -> str:
    """Encode a version byte and 20-byte hash as a base58-check address."""
    if not isinstance(version, int) or not 0 <= version <= 0xFF:
        raise InvalidAddress(version, "version must fit in a single byte")
    hash160_bytes = bytes(hash160_bytes)
    if len(hash160_bytes) != HASH160_LENGTH:
        raise InvalidAddress(
            hash160_bytes.hex(),
            f"hash is {len(hash160_bytes)} bytes, expected {HASH160_LENGTH}",
        )
    return str(CBase58Data.from_bytes(hash160_bytes, version))
