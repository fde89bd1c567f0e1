"""
Building the `stack-stx` contract call for the PoX contract.

`stack-stx` takes (amount-ustx uint) (pox-addr (tuple (version (buff 1))
(hashbytes (buff 20)))) (lock-period uint), in that order.
"""

from __future__ import annotations

from dataclasses import dataclass

from btc_address import decode_btc_address
from clarity import as_uint, buffer_cv, tuple_cv, uint_cv
from pox_errors import InsufficientFunds, InvalidContractIdentifier
from stx_transactions import ContractCallParameters, ContractCallTransaction, StacksNetwork

STACK_STX_FUNCTION = "stack-stx"
AMOUNT_ARG_INDEX = 0


@dataclass(frozen=True)
class StackingIntent:
    """A caller's request to lock STX for a number of reward cycles."""

    amount_ustx: int
    pox_address: str  # BTC reward address, base58-check
    cycles: int
    contract: str  # 'address.name' of the PoX contract
    sender_key: str  # hex private key


class StackingCallParameters(ContractCallParameters):
    """Contract-call parameters for `stack-stx`."""

    @property
    def amount_ustx(self) -> int:
        return as_uint(self.function_args[AMOUNT_ARG_INDEX])

    def with_adjusted_amount(self, amount_ustx: int) -> StackingCallParameters:
        return self.with_argument(AMOUNT_ARG_INDEX, uint_cv(amount_ustx))


def split_contract_identifier(contract: str) -> tuple[str, str]:
    """Split 'SP....pox' into ('SP...', 'pox')."""
    if not isinstance(contract, str):
        raise InvalidContractIdentifier(repr(contract))
    parts = contract.split(".")
    if len(parts) != 2 or not all(parts):
        raise InvalidContractIdentifier(contract)
    return parts[0], parts[1]


def pox_address_cv(pox_address: str):
    """The contract's tuple form of a BTC reward address."""
    version, hash160_bytes = decode_btc_address(pox_address)
    return tuple_cv(
        {
            "hashbytes": buffer_cv(hash160_bytes),
            "version": buffer_cv(bytes([version])),
        }
    )


def build_lock_parameters(
    intent: StackingIntent, network: StacksNetwork
) -> StackingCallParameters:
    contract_address, contract_name = split_contract_identifier(intent.contract)
    return StackingCallParameters(
        contract_address=contract_address,
        contract_name=contract_name,
        function_name=STACK_STX_FUNCTION,
        function_args=(
            uint_cv(intent.amount_ustx),
            pox_address_cv(intent.pox_address),
            uint_cv(intent.cycles),
        ),
        network=network,
    )


def reduce_amount_by_fee(
    tx: ContractCallTransaction, amount_ustx: int
) -> ContractCallTransaction:
    """
    Return ``tx`` with its amount argument set to ``amount_ustx - tx.fee``.

    ``tx.call`` must be StackingCallParameters, as built by
    build_lock_parameters. The fee is paid from the same balance that is
    being locked, so the fee has to be estimated on a provisional amount
    first and the amount patched afterwards. The uint argument has a fixed width, so the patched
    transaction has the same size and the estimate stays valid.
    """
    if tx.fee >= amount_ustx:
        raise InsufficientFunds(amount_ustx, tx.fee)
    return tx.with_call(tx.call.with_adjusted_amount(amount_ustx - tx.fee))
