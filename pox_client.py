"""
PoX stacking client.

Implements:
- PoX parameter lookup (/v2/pox)
- stack-stx submission with the fee taken out of the locked amount
- stacker state lookup through the contract's get-stacker-info read-only call
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

import stacks_node
from btc_address import encode_btc_address
from clarity import (
    ClarityType,
    ClarityValue,
    as_buffer,
    as_optional,
    as_uint,
    deserialize_cv_hex,
    narrow_tuple,
    serialize_cv_hex,
    standard_principal_cv,
)
from pox_errors import (
    ContractCallFailed,
    DecodingError,
    InvalidAddress,
    NodeUnreachable,
    NotStacking,
    ProtocolMismatch,
    TypeMismatch,
)
from pox_stacking import (
    StackingCallParameters,
    StackingIntent,
    build_lock_parameters,
    reduce_amount_by_fee,
    split_contract_identifier,
)
from stacks_node import DEFAULT_TIMEOUT, node_get, node_post, response_json
from stx_transactions import StacksNetwork, StacksTransactionFacility, TransactionFacility

# Load .env from project root
PROJECT_ROOT = Path(__file__).parent
load_dotenv(PROJECT_ROOT / ".env")

logger = logging.getLogger(__name__)

DEFAULT_NODE_URL = "http://localhost:3999"
REGISTRATION_WINDOW_LENGTH = 250
USTX_PER_STX = Decimal("1000000")

# Read-only calls need a sender; any valid principal will do.
READ_ONLY_SENDER = "ST384HBMC97973427QMM58NY2R9TTTN4M599XM5TD"
GET_STACKER_INFO_FUNCTION = "get-stacker-info"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class PoxConfig:
    """
    Configuration for the PoX client.

    Values are sourced from environment variables or a .env file:
    - STX_NODE_URL: Stacks node RPC base URL (default http://localhost:3999).
    - STX_NETWORK: "mainnet" or "testnet" (defaults to "testnet").
    - STX_HTTP_TIMEOUT: per-request timeout in seconds (default 10).
    - STX_VALIDATE_ABI: check contract-call arguments against the contract
      interface before signing (default true; "0", "false" or "no" turn it off).
    """

    node_url: str = DEFAULT_NODE_URL
    network: str = "testnet"
    timeout: float = DEFAULT_TIMEOUT
    validate_with_abi: bool = True

    @classmethod
    def from_env(cls) -> PoxConfig:
        """Build PoxConfig from environment variables."""
        raw_network = os.getenv("STX_NETWORK", "testnet").lower()
        network = "mainnet" if raw_network == "mainnet" else "testnet"
        return cls(
            node_url=os.getenv("STX_NODE_URL", DEFAULT_NODE_URL),
            network=network,
            timeout=float(os.getenv("STX_HTTP_TIMEOUT", str(DEFAULT_TIMEOUT))),
            validate_with_abi=os.getenv("STX_VALIDATE_ABI", "true").lower()
            not in ("0", "false", "no"),
        )

    def stacks_network(self) -> StacksNetwork:
        return StacksNetwork.from_name(self.network, self.node_url)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PoxParameters:
    contract_id: str
    first_burnchain_block_height: int
    min_amount_ustx: int
    reward_cycle_id: int
    reward_cycle_length: int
    rejection_fraction: int | None = None
    registration_window_length: int = REGISTRATION_WINDOW_LENGTH

    @property
    def min_amount_stx(self) -> Decimal:
        return Decimal(self.min_amount_ustx) / USTX_PER_STX

    @property
    def next_cycle_start_height(self) -> int:
        """Burn block height at which the next reward cycle begins."""
        return self.first_burnchain_block_height + (
            (self.reward_cycle_id + 1) * self.reward_cycle_length
        )

    @classmethod
    def from_json(cls, data: Any) -> PoxParameters:
        if not isinstance(data, dict):
            raise ProtocolMismatch(f"PoX info is not an object: {data!r}")

        cycle_id = data.get("reward_cycle_id")
        if cycle_id is None:
            current = data.get("current_cycle")
            cycle_id = current.get("id") if isinstance(current, dict) else None

        values = {
            "first_burnchain_block_height": data.get("first_burnchain_block_height"),
            "min_amount_ustx": data.get("min_amount_ustx"),
            "reward_cycle_id": cycle_id,
            "reward_cycle_length": data.get("reward_cycle_length"),
        }
        missing = [name for name, value in values.items() if value is None]
        contract_id = data.get("contract_id")
        if not isinstance(contract_id, str) or not contract_id:
            missing.insert(0, "contract_id")
        if missing:
            raise ProtocolMismatch(f"PoX info is missing fields: {', '.join(missing)}")

        try:
            ints = {name: int(value) for name, value in values.items()}
            rejection = data.get("rejection_fraction")
            rejection = int(rejection) if rejection is not None else None
            window = int(data.get("registration_window_length", REGISTRATION_WINDOW_LENGTH))
        except (TypeError, ValueError) as exc:
            raise ProtocolMismatch(f"PoX info has non-integer fields: {exc}") from exc

        return cls(
            contract_id=contract_id,
            rejection_fraction=rejection,
            registration_window_length=window,
            **ints,
        )


@dataclass(frozen=True)
class StackerInfo:
    amount_ustx: str  # decimal string, may exceed native int ranges elsewhere
    first_reward_cycle: int
    lock_period: int
    pox_addr: dict[str, bytes] = field(default_factory=dict)
    btc_address: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount_ustx": self.amount_ustx,
            "amount_stx": str(Decimal(self.amount_ustx) / USTX_PER_STX),
            "first_reward_cycle": self.first_reward_cycle,
            "lock_period": self.lock_period,
            "pox_addr": {
                "version": self.pox_addr["version"].hex(),
                "hashbytes": self.pox_addr["hashbytes"].hex(),
            },
            "btc_address": self.btc_address,
        }


_POX_ADDR_SCHEMA = {"version": as_buffer, "hashbytes": as_buffer}


def _as_pox_addr(cv: ClarityValue) -> dict[str, bytes]:
    return narrow_tuple(cv, _POX_ADDR_SCHEMA)


STACKER_INFO_SCHEMA = {
    "amount-ustx": as_uint,
    "first-reward-cycle": as_uint,
    "lock-period": as_uint,
    "pox-addr": _as_pox_addr,
}


def decode_stacker_info(address: str, cv: ClarityValue) -> StackerInfo:
    """
    Turn a get-stacker-info result into a StackerInfo.

    The contract returns (optional (tuple ...)); a bare tuple is accepted too.
    """
    if cv.type_id in (ClarityType.OPTIONAL_NONE, ClarityType.OPTIONAL_SOME):
        cv = as_optional(cv)
        if cv is None:
            raise NotStacking(address)

    try:
        fields = narrow_tuple(cv, STACKER_INFO_SCHEMA)
    except TypeMismatch as exc:
        raise DecodingError(f"Unexpected stacker info shape: {exc}") from exc

    pox_addr = fields["pox-addr"]
    version_bytes = pox_addr["version"]
    if len(version_bytes) != 1:
        raise DecodingError(f"pox-addr version must be 1 byte, got {version_bytes.hex()}")
    try:
        btc_address = encode_btc_address(version_bytes[0], pox_addr["hashbytes"])
    except InvalidAddress as exc:
        raise DecodingError(f"Cannot encode pox-addr as a BTC address: {exc}") from exc

    return StackerInfo(
        amount_ustx=str(fields["amount-ustx"]),
        first_reward_cycle=fields["first-reward-cycle"],
        lock_period=fields["lock-period"],
        pox_addr={"version": version_bytes, "hashbytes": pox_addr["hashbytes"]},
        btc_address=btc_address,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class PoxNodeClient:
    """Talks to one Stacks node about the PoX stacking contract."""

    def __init__(
        self,
        config: PoxConfig,
        facility: TransactionFacility | None = None,
    ) -> None:
        self.config = config
        self.network = config.stacks_network()
        self.facility = facility or StacksTransactionFacility(
            timeout=config.timeout, validate_with_abi=config.validate_with_abi
        )

    @property
    def node_url(self) -> str:
        return self.config.node_url

    def get_pox_parameters(self) -> PoxParameters:
        data = node_get(self.node_url, "/v2/pox", timeout=self.config.timeout)
        return PoxParameters.from_json(data)

    def get_lock_parameters(self, intent: StackingIntent) -> StackingCallParameters:
        """Call parameters for stack-stx against the configured network."""
        return build_lock_parameters(intent, self.network)

    def lock_stx(self, intent: StackingIntent) -> str:
        """
        Submit stack-stx for ``intent`` and return the transaction id.

        Fee estimation, amount adjustment, signing and broadcast run strictly
        in that order.
        """
        call = build_lock_parameters(intent, self.network)
        tx = self.facility.build_transaction(call, intent.sender_key)
        tx = reduce_amount_by_fee(tx, intent.amount_ustx)
        signed = self.facility.sign_transaction(tx, intent.sender_key)
        txid = self.facility.broadcast_transaction(signed, self.network)
        logger.info(
            "Submitted stack-stx %s: %d uSTX (fee %d) for %d cycles",
            txid,
            intent.amount_ustx - tx.fee,
            tx.fee,
            intent.cycles,
        )
        return txid

    def get_stacker_info(self, address: str) -> StackerInfo:
        info = self.get_pox_parameters()
        args = [serialize_cv_hex(standard_principal_cv(address))]
        result = self.call_read_only(info.contract_id, GET_STACKER_INFO_FUNCTION, args)
        return decode_stacker_info(address, deserialize_cv_hex(result))

    def call_read_only(self, contract: str, function_name: str, args: list[str]) -> str:
        """
        Read-only call to a Clarity contract function (no transaction needed).

        ``args`` are 0x-prefixed serialized Clarity values. Returns the
        0x-prefixed serialized result.
        """
        contract_address, contract_name = split_contract_identifier(contract)
        path = f"/v2/contracts/call-read/{contract_address}/{contract_name}/{function_name}"
        resp = node_post(
            self.node_url,
            path,
            json_body={"sender": READ_ONLY_SENDER, "arguments": args},
            timeout=self.config.timeout,
        )
        try:
            data = resp.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("okay") is False:
            raise ContractCallFailed(
                f"{contract}::{function_name} failed", data.get("cause")
            )
        if resp.status_code >= 500:
            raise NodeUnreachable(
                stacks_node.node_url(self.node_url, path), f"HTTP {resp.status_code}"
            )
        if not resp.ok:
            raise ContractCallFailed(f"HTTP {resp.status_code}", resp.text or None)

        data = response_json(resp)
        if not isinstance(data, dict):
            raise ProtocolMismatch(f"Unexpected read-only response: {data!r}")
        result = data.get("result")
        if not isinstance(result, str):
            raise ProtocolMismatch(f"Read-only response has no result: {data!r}")
        return result
