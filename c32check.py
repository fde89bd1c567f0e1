"""
c32check encoding of Stacks addresses.

A Stacks address is 'S' + c32(version) + c32(hash160 + checksum), where the
checksum is the first 4 bytes of a double SHA256 over version + hash160.
"""

from __future__ import annotations

import hashlib

from pox_errors import InvalidAddress

# Stacks address versions
ADDRESS_VERSION_MAINNET_SINGLE_SIG = 22  # 'SP'
ADDRESS_VERSION_TESTNET_SINGLE_SIG = 26  # 'ST'
ADDRESS_VERSION_MAINNET_MULTI_SIG = 20  # 'SM'
ADDRESS_VERSION_TESTNET_MULTI_SIG = 21  # 'SN'

# c32 alphabet (Crockford base32 variant)
C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

HASH160_LENGTH = 20
CHECKSUM_LENGTH = 4


def _c32_encode(data: bytes) -> str:
    """Encode bytes to c32 string."""
    if not data:
        return ""
    num = int.from_bytes(data, "big")

    result = []
    while num > 0:
        num, remainder = divmod(num, 32)
        result.append(C32_ALPHABET[remainder])
    # One '0' per leading zero byte
    for b in data:
        if b == 0:
            result.append(C32_ALPHABET[0])
        else:
            break
    return "".join(reversed(result))


def _c32_decode(c32_str: str) -> bytes:
    """Decode a c32 string to bytes."""
    leading_zeros = 0
    for ch in c32_str:
        if ch == C32_ALPHABET[0]:
            leading_zeros += 1
        else:
            break

    num = 0
    for ch in c32_str:
        idx = C32_ALPHABET.find(ch)
        if idx < 0:
            raise ValueError(f"Invalid c32 character: {ch!r}")
        num = num * 32 + idx

    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * leading_zeros + body


def _c32_checksum(version: int, data: bytes) -> bytes:
    """Compute c32check checksum (double SHA256 of version + data)."""
    payload = bytes([version]) + data
    h1 = hashlib.sha256(payload).digest()
    h2 = hashlib.sha256(h1).digest()
    return h2[:CHECKSUM_LENGTH]


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    sha = hashlib.sha256(data).digest()
    return hashlib.new("ripemd160", sha).digest()


def c32_address(version: int, hash160_bytes: bytes) -> str:
    """
    Encode a Stacks address from version byte and hash160.

    Returns a c32check-encoded address string like 'SP...' or 'ST...'.
    """
    if not 0 <= version < len(C32_ALPHABET):
        raise InvalidAddress(version, "Stacks address version must be below 32")
    if len(hash160_bytes) != HASH160_LENGTH:
        raise InvalidAddress(
            bytes(hash160_bytes).hex(), f"hash must be {HASH160_LENGTH} bytes"
        )
    checksum = _c32_checksum(version, hash160_bytes)
    return "S" + C32_ALPHABET[version] + _c32_encode(hash160_bytes + checksum)


def decode_c32_address(address: str) -> tuple[int, bytes]:
    """Decode a c32check address into version byte and hash160 bytes."""
    if not isinstance(address, str) or len(address) < 5 or address[0] != "S":
        raise InvalidAddress(address, "not a Stacks address")

    normalized = address.upper()
    version = C32_ALPHABET.find(normalized[1])
    if version < 0:
        raise InvalidAddress(address, "unknown version character")

    try:
        decoded = _c32_decode(normalized[2:])
    except ValueError as exc:
        raise InvalidAddress(address, str(exc)) from exc

    if len(decoded) != HASH160_LENGTH + CHECKSUM_LENGTH:
        raise InvalidAddress(address, "wrong payload length")

    hash160_bytes = decoded[:HASH160_LENGTH]
    checksum = decoded[HASH160_LENGTH:]
    if checksum != _c32_checksum(version, hash160_bytes):
        raise InvalidAddress(address, "checksum mismatch")

    return version, hash160_bytes
