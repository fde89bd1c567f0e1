"""Unit tests for stack-stx call construction and fee adjustment."""

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from c32check import c32_address  # noqa: E402
from clarity import (  # noqa: E402
    ClarityType,
    as_buffer,
    as_tuple,
    as_uint,
    deserialize_cv_hex,
    serialize_cv_hex,
)
from pox_errors import (  # noqa: E402
    InsufficientFunds,
    InvalidAddress,
    InvalidContractIdentifier,
)
from pox_stacking import (  # noqa: E402
    StackingCallParameters,
    StackingIntent,
    build_lock_parameters,
    reduce_amount_by_fee,
    split_contract_identifier,
)
from stx_transactions import ContractCallTransaction, StacksNetwork  # noqa: E402

POX_CONTRACT_ADDRESS = c32_address(26, bytes(20))
POX_CONTRACT = f"{POX_CONTRACT_ADDRESS}.pox"
BTC_ADDRESS = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
NETWORK = StacksNetwork.testnet("http://localhost:3999")


def _intent(amount=2_000_000_000_000, address=BTC_ADDRESS, cycles=6, contract=POX_CONTRACT):
    return StackingIntent(
        amount_ustx=amount,
        pox_address=address,
        cycles=cycles,
        contract=contract,
        sender_key="01" * 32,
    )


def _tx(call, fee):
    return ContractCallTransaction(
        call=call, public_key=b"\x02" + b"\xab" * 32, nonce=4, fee=fee
    )


# ---------------------------------------------------------------------------
# Contract identifiers
# ---------------------------------------------------------------------------


def test_split_contract_identifier():
    assert split_contract_identifier("ST1ABC.pox") == ("ST1ABC", "pox")


@pytest.mark.parametrize("contract", ["ST1ABC", "ST1ABC.pox.extra", ".pox", "ST1ABC.", ""])
def test_split_contract_identifier_rejects_malformed(contract):
    with pytest.raises(InvalidContractIdentifier):
        split_contract_identifier(contract)


# ---------------------------------------------------------------------------
# build_lock_parameters
# ---------------------------------------------------------------------------


def test_build_lock_parameters_for_mainnet_address():
    params = build_lock_parameters(_intent(), NETWORK)

    assert isinstance(params, StackingCallParameters)
    assert params.contract_address == POX_CONTRACT_ADDRESS
    assert params.contract_name == "pox"
    assert params.function_name == "stack-stx"
    assert params.network == NETWORK
    assert len(params.function_args) == 3

    amount, pox_addr, cycles = params.function_args
    assert as_uint(amount) == 2_000_000_000_000
    assert as_uint(cycles) == 6

    fields = as_tuple(pox_addr)
    assert list(fields) == ["hashbytes", "version"]
    assert as_buffer(fields["version"]) == b"\x00"
    assert as_buffer(fields["hashbytes"]) == bytes.fromhex(
        "62e907b15cbf27d5425399ebf6f0fb50ebb88f18"
    )


def test_build_lock_parameters_args_serialize():
    params = build_lock_parameters(_intent(), NETWORK)
    for arg in params.function_args:
        assert deserialize_cv_hex(serialize_cv_hex(arg)) == arg
    assert params.function_args[1].type_id == ClarityType.TUPLE


def test_build_lock_parameters_bad_address():
    with pytest.raises(InvalidAddress):
        build_lock_parameters(_intent(address="not-an-address"), NETWORK)


def test_build_lock_parameters_bad_contract():
    with pytest.raises(InvalidContractIdentifier):
        build_lock_parameters(_intent(contract="pox"), NETWORK)


def test_with_adjusted_amount_returns_new_parameters():
    params = build_lock_parameters(_intent(), NETWORK)
    adjusted = params.with_adjusted_amount(123)
    assert isinstance(adjusted, StackingCallParameters)
    assert adjusted.amount_ustx == 123
    assert params.amount_ustx == 2_000_000_000_000
    assert adjusted.function_args[1:] == params.function_args[1:]


# ---------------------------------------------------------------------------
# reduce_amount_by_fee
# ---------------------------------------------------------------------------


def test_reduce_amount_by_fee():
    params = build_lock_parameters(_intent(), NETWORK)
    tx = _tx(params, fee=180)

    reduced = reduce_amount_by_fee(tx, 2_000_000_000_000)

    assert isinstance(reduced.call, StackingCallParameters)
    assert reduced.call.amount_ustx == 2_000_000_000_000 - 180
    assert as_uint(reduced.call.function_args[0]) == 2_000_000_000_000 - 180
    assert reduced.fee == 180
    assert reduced.nonce == 4
    assert reduced.call.function_args[1:] == params.function_args[1:]
    # input is untouched
    assert as_uint(tx.call.function_args[0]) == 2_000_000_000_000


def test_reduce_amount_by_fee_keeps_transaction_size():
    tx = _tx(build_lock_parameters(_intent(), NETWORK), fee=180)
    reduced = reduce_amount_by_fee(tx, 2_000_000_000_000)
    assert len(reduced.serialize()) == len(tx.serialize())


def test_reduce_amount_by_fee_leaves_one():
    tx = _tx(build_lock_parameters(_intent(amount=1000), NETWORK), fee=999)
    assert as_uint(reduce_amount_by_fee(tx, 1000).call.function_args[0]) == 1


@pytest.mark.parametrize("fee", [1000, 1001, 10**20])
def test_reduce_amount_by_fee_insufficient(fee):
    tx = _tx(build_lock_parameters(_intent(amount=1000), NETWORK), fee=fee)
    with pytest.raises(InsufficientFunds) as excinfo:
        reduce_amount_by_fee(tx, 1000)
    assert excinfo.value.amount == 1000
    assert excinfo.value.fee == fee
