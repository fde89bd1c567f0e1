"""
Stacks contract-call transactions: build, fee estimation, signing and
broadcasting against a Stacks node.

Transactions are standard single-sig P2PKH. The wire layout is:

    version(1) chain_id(4)
    auth_type(1) hash_mode(1) signer(20) nonce(8) fee(8) key_encoding(1) signature(65)
    anchor_mode(1) post_condition_mode(1) post_conditions(4 + ...)
    payload
"""

from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, replace
from typing import Literal, Protocol

import coincurve

from c32check import (
    ADDRESS_VERSION_MAINNET_SINGLE_SIG,
    ADDRESS_VERSION_TESTNET_SINGLE_SIG,
    c32_address,
    decode_c32_address,
    hash160,
)
from clarity import ClarityValue, matches_abi_type, serialize_cv
from pox_errors import BroadcastRejected, EncodingError, NodeUnreachable, ProtocolMismatch
from stacks_node import DEFAULT_TIMEOUT, node_get, node_post, node_url

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Stacks transaction versions
TX_VERSION_MAINNET = 0x00
TX_VERSION_TESTNET = 0x80

# Chain IDs
CHAIN_ID_MAINNET = 0x00000001
CHAIN_ID_TESTNET = 0x80000000

PAYLOAD_CONTRACT_CALL = 0x02

# Auth types
AUTH_STANDARD = 0x04
SPENDING_CONDITION_SINGLESIG_P2PKH = 0x00
PUBKEY_ENCODING_COMPRESSED = 0x00

# Anchor modes
ANCHOR_MODE_ANY = 0x03

# Post-condition mode
POST_CONDITION_MODE_DENY = 0x02

SIGNATURE_LENGTH = 65
EMPTY_SIGNATURE = b"\x00" * SIGNATURE_LENGTH

STXNetwork = Literal["mainnet", "testnet"]


def _sha512_256(data: bytes) -> bytes:
    return hashlib.new("sha512_256", data).digest()


# ---------------------------------------------------------------------------
# Network targets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StacksNetwork:
    """Where a transaction is sent and which chain it is valid on."""

    name: STXNetwork
    core_api_url: str
    transaction_version: int
    chain_id: int
    address_version: int

    @classmethod
    def mainnet(cls, core_api_url: str) -> StacksNetwork:
        return cls(
            name="mainnet",
            core_api_url=core_api_url,
            transaction_version=TX_VERSION_MAINNET,
            chain_id=CHAIN_ID_MAINNET,
            address_version=ADDRESS_VERSION_MAINNET_SINGLE_SIG,
        )

    @classmethod
    def testnet(cls, core_api_url: str) -> StacksNetwork:
        return cls(
            name="testnet",
            core_api_url=core_api_url,
            transaction_version=TX_VERSION_TESTNET,
            chain_id=CHAIN_ID_TESTNET,
            address_version=ADDRESS_VERSION_TESTNET_SINGLE_SIG,
        )

    @classmethod
    def from_name(cls, name: str, core_api_url: str) -> StacksNetwork:
        if name == "mainnet":
            return cls.mainnet(core_api_url)
        if name == "testnet":
            return cls.testnet(core_api_url)
        raise ValueError(f"Invalid network: {name}. Use 'mainnet' or 'testnet'.")


# ---------------------------------------------------------------------------
# Contract calls
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContractCallParameters:
    """Everything needed to express a public contract function call."""

    contract_address: str
    contract_name: str
    function_name: str
    function_args: tuple[ClarityValue, ...]
    network: StacksNetwork

    @property
    def contract_id(self) -> str:
        return f"{self.contract_address}.{self.contract_name}"

    def with_argument(self, index: int, value: ClarityValue):
        """Return a copy with one positional argument replaced."""
        args = list(self.function_args)
        args[index] = value
        return replace(self, function_args=tuple(args))

    def serialize_payload(self) -> bytes:
        payload = struct.pack("B", PAYLOAD_CONTRACT_CALL)

        version, hash160_bytes = decode_c32_address(self.contract_address)
        payload += struct.pack("B", version)
        payload += hash160_bytes

        payload += _lp_ascii(self.contract_name)
        payload += _lp_ascii(self.function_name)

        payload += struct.pack(">I", len(self.function_args))
        for arg in self.function_args:
            payload += serialize_cv(arg)
        return payload


def _lp_ascii(name: str) -> bytes:
    """1-byte length prefixed ASCII name."""
    raw = name.encode("ascii")
    if not raw or len(raw) > 128:
        raise EncodingError(f"Invalid Clarity name: {name!r}", name)
    return struct.pack("B", len(raw)) + raw


@dataclass(frozen=True)
class ContractCallTransaction:
    """An unsigned contract-call transaction with its nonce and fee fixed."""

    call: ContractCallParameters
    public_key: bytes
    nonce: int
    fee: int

    @property
    def sender_address(self) -> str:
        return c32_address(self.call.network.address_version, hash160(self.public_key))

    def with_call(self, call: ContractCallParameters) -> ContractCallTransaction:
        return replace(self, call=call)

    def serialize(
        self,
        signature: bytes = EMPTY_SIGNATURE,
        fee: int | None = None,
        nonce: int | None = None,
    ) -> bytes:
        """Serialize with the given signature (empty by default)."""
        network = self.call.network
        fee = self.fee if fee is None else fee
        nonce = self.nonce if nonce is None else nonce

        tx = struct.pack("B", network.transaction_version)
        tx += struct.pack(">I", network.chain_id)

        tx += struct.pack("B", AUTH_STANDARD)
        tx += struct.pack("B", SPENDING_CONDITION_SINGLESIG_P2PKH)
        tx += hash160(self.public_key)
        tx += struct.pack(">Q", nonce)
        tx += struct.pack(">Q", fee)
        tx += struct.pack("B", PUBKEY_ENCODING_COMPRESSED)
        tx += signature

        tx += struct.pack("B", ANCHOR_MODE_ANY)
        tx += struct.pack("B", POST_CONDITION_MODE_DENY)
        tx += struct.pack(">I", 0)
        tx += self.call.serialize_payload()
        return tx

    def presign_hash(self) -> bytes:
        """
        Hash that the origin key signs.

        The initial sighash covers the transaction with nonce, fee and
        signature cleared; the presign hash then commits to auth type, fee
        and nonce.
        """
        initial = _sha512_256(self.serialize(EMPTY_SIGNATURE, fee=0, nonce=0))
        return _sha512_256(
            initial
            + struct.pack("B", AUTH_STANDARD)
            + struct.pack(">Q", self.fee)
            + struct.pack(">Q", self.nonce)
        )


def transaction_id(signed_tx: bytes) -> str:
    return _sha512_256(signed_tx).hex()


def check_call_against_interface(call: ContractCallParameters, interface: dict) -> None:
    """
    Check a call's arguments against the contract's published interface.

    Raises EncodingError when the function is missing or not public, or when
    the argument count or any argument type differs from its signature.
    """
    functions = interface.get("functions")
    if not isinstance(functions, list):
        raise ProtocolMismatch(f"Contract interface has no function list: {call.contract_id}")

    abi = next(
        (f for f in functions if isinstance(f, dict) and f.get("name") == call.function_name),
        None,
    )
    if abi is None:
        raise EncodingError(
            f"{call.contract_id} has no function {call.function_name!r}", call.function_name
        )
    if abi.get("access") != "public":
        raise EncodingError(
            f"{call.contract_id}::{call.function_name} is not public", call.function_name
        )

    abi_args = abi.get("args") or []
    if len(abi_args) != len(call.function_args):
        raise EncodingError(
            f"{call.function_name} takes {len(abi_args)} arguments, "
            f"got {len(call.function_args)}",
            call.function_args,
        )

    for position, (abi_arg, cv) in enumerate(zip(abi_args, call.function_args)):
        try:
            abi_type = abi_arg["type"]
            matches = matches_abi_type(cv, abi_type)
        except (KeyError, TypeError) as exc:
            raise ProtocolMismatch(
                f"Malformed interface for {call.contract_id}::{call.function_name}: {exc}"
            ) from exc
        if not matches:
            raise EncodingError(
                f"Argument {position} ({abi_arg.get('name')}) of {call.function_name} "
                f"does not match {abi_type!r}: got {cv.type_name}",
                cv,
            )


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def parse_private_key(sender_key: str | bytes) -> coincurve.PrivateKey:
    """
    Load a secp256k1 private key.

    Accepts 32 raw bytes or hex, optionally with the trailing 0x01
    "compressed" marker used by Stacks tooling.
    """
    raw = bytes.fromhex(sender_key) if isinstance(sender_key, str) else bytes(sender_key)
    if len(raw) == 33 and raw[-1] == 0x01:
        raw = raw[:32]
    if len(raw) != 32:
        raise ValueError("Private key must be 32 bytes (optionally 0x01-suffixed).")
    return coincurve.PrivateKey(raw)


# ---------------------------------------------------------------------------
# Facility
# ---------------------------------------------------------------------------


class TransactionFacility(Protocol):
    """What the PoX client needs from a transaction backend."""

    def build_transaction(
        self, call: ContractCallParameters, sender_key: str
    ) -> ContractCallTransaction: ...

    def sign_transaction(self, tx: ContractCallTransaction, sender_key: str) -> bytes: ...

    def broadcast_transaction(self, signed_tx: bytes, network: StacksNetwork) -> str: ...


class StacksTransactionFacility:
    """Transaction backend that talks to a Stacks node's RPC API."""

    def __init__(
        self, timeout: float = DEFAULT_TIMEOUT, validate_with_abi: bool = False
    ) -> None:
        self.timeout = timeout
        self.validate_with_abi = validate_with_abi

    def get_nonce(self, network: StacksNetwork, address: str) -> int:
        """Get the next nonce for an address."""
        data = node_get(
            network.core_api_url,
            f"/v2/accounts/{address}",
            params={"proof": 0},
            timeout=self.timeout,
        )
        try:
            return int(data["nonce"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolMismatch(f"Account response has no nonce: {data!r}") from exc

    def get_fee_rate(self, network: StacksNetwork) -> int:
        """Fee rate in micro-STX per byte."""
        data = node_get(network.core_api_url, "/v2/fees/transfer", timeout=self.timeout)
        if isinstance(data, bool) or not isinstance(data, int):
            raise ProtocolMismatch(f"Unexpected fee rate response: {data!r}")
        return data

    def get_contract_interface(
        self, network: StacksNetwork, contract_address: str, contract_name: str
    ) -> dict:
        data = node_get(
            network.core_api_url,
            f"/v2/contracts/interface/{contract_address}/{contract_name}",
            timeout=self.timeout,
        )
        if not isinstance(data, dict):
            raise ProtocolMismatch(f"Unexpected contract interface response: {data!r}")
        return data

    def estimate_fee(self, tx: ContractCallTransaction) -> int:
        """Fee for ``tx``: the node's byte rate times the signed size."""
        return self.get_fee_rate(tx.call.network) * len(tx.serialize())

    def build_transaction(
        self, call: ContractCallParameters, sender_key: str
    ) -> ContractCallTransaction:
        if self.validate_with_abi:
            interface = self.get_contract_interface(
                call.network, call.contract_address, call.contract_name
            )
            check_call_against_interface(call, interface)
        public_key = parse_private_key(sender_key).public_key.format(compressed=True)
        tx = ContractCallTransaction(call=call, public_key=public_key, nonce=0, fee=0)
        tx = replace(tx, nonce=self.get_nonce(call.network, tx.sender_address))
        fee = self.estimate_fee(tx)
        logger.debug(
            "Built %s call from %s: nonce=%d fee=%d",
            call.function_name,
            tx.sender_address,
            tx.nonce,
            fee,
        )
        return replace(tx, fee=fee)

    def sign_transaction(self, tx: ContractCallTransaction, sender_key: str) -> bytes:
        privkey = parse_private_key(sender_key)
        sig = privkey.sign_recoverable(tx.presign_hash(), hasher=None)
        # coincurve returns [r(32) || s(32) || recovery_id(1)]
        # Stacks format: [recovery_id(1) || r(32) || s(32)]
        stacks_sig = bytes([sig[64]]) + sig[:64]
        return tx.serialize(stacks_sig)

    def broadcast_transaction(self, signed_tx: bytes, network: StacksNetwork) -> str:
        """Broadcast a signed transaction and return its txid."""
        resp = node_post(
            network.core_api_url,
            "/v2/transactions",
            data=signed_tx,
            timeout=self.timeout,
        )
        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.ok and isinstance(body, str):
            txid = body.strip().strip('"')
            logger.info("Broadcast transaction %s to %s", txid, network.name)
            return txid

        if isinstance(body, dict) and "error" in body:
            logger.warning(
                "Transaction rejected by node: %s - %s", body["error"], body.get("reason")
            )
            raise BroadcastRejected(str(body["error"]), body.get("reason"))

        if resp.status_code >= 500:
            # a gateway or overloaded node, not a verdict on the transaction
            raise NodeUnreachable(
                node_url(network.core_api_url, "/v2/transactions"),
                f"HTTP {resp.status_code}",
            )

        if not resp.ok:
            raise BroadcastRejected(f"HTTP {resp.status_code}", resp.text or None)

        raise ProtocolMismatch(f"Unexpected broadcast response: {resp.text[:200]!r}")
