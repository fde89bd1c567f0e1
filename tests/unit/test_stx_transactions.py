"""Unit tests for contract-call transaction building, signing and broadcast."""

import sys
from dataclasses import replace
from pathlib import Path

import coincurve
import pytest
import requests

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import stacks_node  # noqa: E402
import stx_transactions  # noqa: E402
from c32check import c32_address, hash160  # noqa: E402
from clarity import buffer_cv, tuple_cv, uint_cv  # noqa: E402
from pox_errors import (  # noqa: E402
    BroadcastRejected,
    EncodingError,
    NodeUnreachable,
    ProtocolMismatch,
)
from stx_transactions import (  # noqa: E402
    ContractCallParameters,
    ContractCallTransaction,
    StacksNetwork,
    StacksTransactionFacility,
)

NODE_URL = "http://localhost:3999"
NETWORK = StacksNetwork.testnet(NODE_URL)
SENDER_KEY = "00" * 31 + "01"
PUBLIC_KEY = coincurve.PrivateKey(bytes.fromhex(SENDER_KEY)).public_key.format(compressed=True)

STACK_STX_INTERFACE = {
    "functions": [
        {
            "name": "stack-stx",
            "access": "public",
            "args": [
                {"name": "amount-ustx", "type": "uint128"},
                {
                    "name": "pox-addr",
                    "type": {
                        "tuple": [
                            {"name": "hashbytes", "type": {"buffer": {"length": 32}}},
                            {"name": "version", "type": {"buffer": {"length": 1}}},
                        ]
                    },
                },
                {"name": "lock-period", "type": "uint128"},
            ],
            "outputs": {"type": {"response": {"ok": "bool", "error": "int128"}}},
        },
        {
            "name": "get-stacker-info",
            "access": "read_only",
            "args": [{"name": "stacker", "type": "principal"}],
            "outputs": {"type": "bool"},
        },
    ]
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=None, url=NODE_URL):
        self._payload = payload
        self.status_code = status_code
        self.text = text if text is not None else repr(payload)
        self.url = url

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")


def _call():
    return ContractCallParameters(
        contract_address=c32_address(26, bytes(20)),
        contract_name="pox",
        function_name="stack-stx",
        function_args=(uint_cv(5000),),
        network=NETWORK,
    )


def _stack_stx_call(*args):
    if not args:
        args = (
            uint_cv(5000),
            tuple_cv({"hashbytes": buffer_cv(bytes(20)), "version": buffer_cv(b"\x00")}),
            uint_cv(6),
        )
    return ContractCallParameters(
        contract_address=c32_address(26, bytes(20)),
        contract_name="pox",
        function_name="stack-stx",
        function_args=tuple(args),
        network=NETWORK,
    )


def _fake_node_get(nonce=7, fee_rate=2, interface=None):
    calls = []

    def fake_get(url, params=None, timeout=None):
        calls.append(url)
        if "/v2/contracts/interface/" in url and interface is not None:
            return FakeResponse(interface)
        if "/v2/accounts/" in url:
            return FakeResponse({"nonce": nonce, "balance": "0x0"})
        if url.endswith("/v2/fees/transfer"):
            return FakeResponse(fee_rate)
        return FakeResponse({}, status_code=404)

    return fake_get, calls


# ---------------------------------------------------------------------------
# Networks
# ---------------------------------------------------------------------------


def test_network_versions():
    mainnet = StacksNetwork.mainnet(NODE_URL)
    assert mainnet.transaction_version == 0x00
    assert mainnet.chain_id == 0x00000001
    assert NETWORK.transaction_version == 0x80
    assert NETWORK.chain_id == 0x80000000


def test_network_from_name_rejects_unknown():
    with pytest.raises(ValueError):
        StacksNetwork.from_name("regtest", NODE_URL)


# ---------------------------------------------------------------------------
# Serialization and signing
# ---------------------------------------------------------------------------


def test_serialize_layout():
    tx = ContractCallTransaction(call=_call(), public_key=PUBLIC_KEY, nonce=3, fee=400)
    data = tx.serialize()

    assert data[0] == 0x80
    assert data[1:5] == b"\x80\x00\x00\x00"
    assert data[5] == stx_transactions.AUTH_STANDARD
    assert data[6] == stx_transactions.SPENDING_CONDITION_SINGLESIG_P2PKH
    assert data[7:27] == hash160(PUBLIC_KEY)
    assert int.from_bytes(data[27:35], "big") == 3
    assert int.from_bytes(data[35:43], "big") == 400
    assert data[44:109] == stx_transactions.EMPTY_SIGNATURE
    assert data.endswith(b"\x09stack-stx\x00\x00\x00\x01" + b"\x01" + (5000).to_bytes(16, "big"))


def test_sender_address_uses_network_version():
    tx = ContractCallTransaction(call=_call(), public_key=PUBLIC_KEY, nonce=0, fee=0)
    assert tx.sender_address == c32_address(26, hash160(PUBLIC_KEY))


def test_parse_private_key_accepts_compressed_suffix():
    key = stx_transactions.parse_private_key(SENDER_KEY + "01")
    assert key.secret == bytes.fromhex(SENDER_KEY)


def test_parse_private_key_rejects_bad_length():
    with pytest.raises(ValueError):
        stx_transactions.parse_private_key("ab" * 10)


def test_sign_transaction_recovers_sender():
    facility = StacksTransactionFacility()
    tx = ContractCallTransaction(call=_call(), public_key=PUBLIC_KEY, nonce=3, fee=400)

    signed = facility.sign_transaction(tx, SENDER_KEY)

    assert len(signed) == len(tx.serialize())
    stacks_sig = signed[44:109]
    assert stacks_sig != stx_transactions.EMPTY_SIGNATURE
    # back to coincurve's [r || s || recovery_id] order
    recoverable = stacks_sig[1:] + stacks_sig[:1]
    recovered = coincurve.PublicKey.from_signature_and_message(
        recoverable, tx.presign_hash(), hasher=None
    )
    assert recovered.format(compressed=True) == PUBLIC_KEY


def test_presign_hash_commits_to_fee():
    tx = ContractCallTransaction(call=_call(), public_key=PUBLIC_KEY, nonce=3, fee=400)
    other = ContractCallTransaction(call=_call(), public_key=PUBLIC_KEY, nonce=3, fee=401)
    assert tx.presign_hash() != other.presign_hash()


def test_transaction_id_is_hex():
    assert len(stx_transactions.transaction_id(b"\x00" * 10)) == 64


# ---------------------------------------------------------------------------
# Build with node lookups
# ---------------------------------------------------------------------------


def test_build_transaction_fetches_nonce_and_estimates_fee(monkeypatch):
    fake_get, calls = _fake_node_get(nonce=7, fee_rate=2)
    monkeypatch.setattr(stacks_node.requests, "get", fake_get)

    tx = StacksTransactionFacility().build_transaction(_call(), SENDER_KEY)

    assert tx.nonce == 7
    assert tx.public_key == PUBLIC_KEY
    assert tx.fee == 2 * len(tx.serialize())
    assert calls[0] == f"{NODE_URL}/v2/accounts/{tx.sender_address}"


def test_fee_rate_protocol_mismatch(monkeypatch):
    monkeypatch.setattr(
        stacks_node.requests, "get", lambda url, params=None, timeout=None: FakeResponse({"fee": 1})
    )
    with pytest.raises(ProtocolMismatch):
        StacksTransactionFacility().get_fee_rate(NETWORK)


def test_nonce_transport_failure(monkeypatch):
    def fake_get(url, params=None, timeout=None):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(stacks_node.requests, "get", fake_get)
    with pytest.raises(NodeUnreachable):
        StacksTransactionFacility().get_nonce(NETWORK, c32_address(26, bytes(20)))


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------


def test_broadcast_returns_txid(monkeypatch):
    seen = {}

    def fake_post(url, data=None, json=None, headers=None, timeout=None):
        seen["url"] = url
        seen["headers"] = headers
        seen["data"] = data
        return FakeResponse('"abc123"')

    monkeypatch.setattr(stacks_node.requests, "post", fake_post)
    txid = StacksTransactionFacility().broadcast_transaction(b"\x01\x02", NETWORK)

    assert txid == "abc123"
    assert seen["url"] == f"{NODE_URL}/v2/transactions"
    assert seen["headers"]["Content-Type"] == "application/octet-stream"
    assert seen["data"] == b"\x01\x02"


def test_broadcast_rejection_keeps_error_and_reason(monkeypatch):
    def fake_post(url, data=None, json=None, headers=None, timeout=None):
        return FakeResponse(
            {"error": "transaction rejected", "reason": "NotEnoughFunds", "txid": "ff"},
            status_code=400,
        )

    monkeypatch.setattr(stacks_node.requests, "post", fake_post)
    with pytest.raises(BroadcastRejected) as excinfo:
        StacksTransactionFacility().broadcast_transaction(b"\x01", NETWORK)

    assert excinfo.value.error == "transaction rejected"
    assert excinfo.value.reason == "NotEnoughFunds"


def test_broadcast_timeout_is_transport_failure(monkeypatch):
    def fake_post(url, data=None, json=None, headers=None, timeout=None):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(stacks_node.requests, "post", fake_post)
    with pytest.raises(NodeUnreachable) as excinfo:
        StacksTransactionFacility().broadcast_transaction(b"\x01", NETWORK)
    assert not isinstance(excinfo.value, BroadcastRejected)


def test_broadcast_client_error_without_json(monkeypatch):
    def fake_post(url, data=None, json=None, headers=None, timeout=None):
        return FakeResponse(ValueError("no json"), status_code=400, text="boom")

    monkeypatch.setattr(stacks_node.requests, "post", fake_post)
    with pytest.raises(BroadcastRejected) as excinfo:
        StacksTransactionFacility().broadcast_transaction(b"\x01", NETWORK)
    assert excinfo.value.error == "HTTP 400"
    assert excinfo.value.reason == "boom"


@pytest.mark.parametrize("status", [500, 502, 503])
def test_broadcast_server_error_is_transport_failure(monkeypatch, status):
    def fake_post(url, data=None, json=None, headers=None, timeout=None):
        return FakeResponse(
            ValueError("no json"), status_code=status, text="Service Unavailable"
        )

    monkeypatch.setattr(stacks_node.requests, "post", fake_post)
    with pytest.raises(NodeUnreachable) as excinfo:
        StacksTransactionFacility().broadcast_transaction(b"\x01", NETWORK)
    assert not isinstance(excinfo.value, BroadcastRejected)
    assert excinfo.value.url == f"{NODE_URL}/v2/transactions"
    assert f"HTTP {status}" in str(excinfo.value)


def test_broadcast_server_error_with_node_error_is_rejection(monkeypatch):
    def fake_post(url, data=None, json=None, headers=None, timeout=None):
        return FakeResponse(
            {"error": "transaction rejected", "reason": "ServerFailureDatabase"},
            status_code=500,
        )

    monkeypatch.setattr(stacks_node.requests, "post", fake_post)
    with pytest.raises(BroadcastRejected) as excinfo:
        StacksTransactionFacility().broadcast_transaction(b"\x01", NETWORK)
    assert excinfo.value.reason == "ServerFailureDatabase"


# ---------------------------------------------------------------------------
# Contract interface checks
# ---------------------------------------------------------------------------


def test_build_transaction_checks_interface(monkeypatch):
    fake_get, calls = _fake_node_get(interface=STACK_STX_INTERFACE)
    monkeypatch.setattr(stacks_node.requests, "get", fake_get)

    facility = StacksTransactionFacility(validate_with_abi=True)
    tx = facility.build_transaction(_stack_stx_call(), SENDER_KEY)

    address = c32_address(26, bytes(20))
    assert calls[0] == f"{NODE_URL}/v2/contracts/interface/{address}/pox"
    assert tx.nonce == 7


def test_build_transaction_skips_interface_by_default(monkeypatch):
    fake_get, calls = _fake_node_get()
    monkeypatch.setattr(stacks_node.requests, "get", fake_get)

    StacksTransactionFacility().build_transaction(_call(), SENDER_KEY)
    assert not any("/v2/contracts/interface/" in url for url in calls)


@pytest.mark.parametrize(
    "args",
    [
        (uint_cv(5000), uint_cv(6)),
        (uint_cv(5000), uint_cv(1), uint_cv(6)),
        (
            uint_cv(5000),
            tuple_cv({"hashbytes": buffer_cv(bytes(20)), "version": buffer_cv(b"\x00\x00")}),
            uint_cv(6),
        ),
    ],
    ids=["missing-argument", "uint-for-tuple", "version-too-long"],
)
def test_build_transaction_rejects_mismatched_arguments(monkeypatch, args):
    fake_get, calls = _fake_node_get(interface=STACK_STX_INTERFACE)
    monkeypatch.setattr(stacks_node.requests, "get", fake_get)

    facility = StacksTransactionFacility(validate_with_abi=True)
    with pytest.raises(EncodingError):
        facility.build_transaction(_stack_stx_call(*args), SENDER_KEY)
    # nothing past the interface lookup
    assert len(calls) == 1


def test_interface_check_unknown_function():
    call = replace(_stack_stx_call(), function_name="stack-stx-v9")
    with pytest.raises(EncodingError):
        stx_transactions.check_call_against_interface(call, STACK_STX_INTERFACE)


def test_interface_check_read_only_function():
    call = replace(_stack_stx_call(), function_name="get-stacker-info")
    call = replace(call, function_args=(uint_cv(1),))
    with pytest.raises(EncodingError):
        stx_transactions.check_call_against_interface(call, STACK_STX_INTERFACE)


def test_interface_check_malformed_interface():
    with pytest.raises(ProtocolMismatch):
        stx_transactions.check_call_against_interface(_stack_stx_call(), {"functions": None})
    broken = {"functions": [{"name": "stack-stx", "access": "public", "args": [{}, {}, {}]}]}
    with pytest.raises(ProtocolMismatch):
        stx_transactions.check_call_against_interface(_stack_stx_call(), broken)
