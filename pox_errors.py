"""
Error types for PoX stacking operations.

Transport failures (NodeUnreachable) and node-reported rejections
(ContractCallFailed, BroadcastRejected) are deliberately separate classes so
callers can retry the former and give up on the latter.
"""

from __future__ import annotations


class PoxError(Exception):
    """Base class for every error raised by the PoX client."""

    pass


class InvalidAddress(PoxError):
    """A reward or Stacks address is malformed or fails its checksum."""

    def __init__(self, address: object, detail: str = "") -> None:
        self.address = address
        self.detail = detail
        message = f"Invalid address: {address!r}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class InvalidContractIdentifier(PoxError):
    """A contract identifier is not of the form 'address.name'."""

    def __init__(self, contract: str) -> None:
        self.contract = contract
        super().__init__(
            f"Invalid contract identifier: {contract!r}. "
            "Expected format 'contract_address.contract_name'."
        )


# ---------------------------------------------------------------------------
# Clarity typed-value boundary
# ---------------------------------------------------------------------------


class ClarityError(PoxError):
    pass


class EncodingError(ClarityError):
    """A value cannot be represented as the requested Clarity type."""

    def __init__(self, message: str, value: object = None) -> None:
        self.value = value
        super().__init__(message)


class TypeMismatch(ClarityError):
    """A decoded Clarity value does not have the expected type tag."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected Clarity {expected}, got {actual}")


class DecodingError(ClarityError):
    """Wire bytes or a decoded value tree do not have the expected shape."""

    pass


# ---------------------------------------------------------------------------
# Stacking
# ---------------------------------------------------------------------------


class InsufficientFunds(PoxError):
    """The transaction fee consumes the whole amount meant to be locked."""

    def __init__(self, amount: int, fee: int) -> None:
        self.amount = amount
        self.fee = fee
        super().__init__(
            f"Fee ({fee} uSTX) leaves nothing to lock from {amount} uSTX."
        )


class NotStacking(PoxError):
    """The PoX contract has no stacking record for an address."""

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"Address {address} is not stacking.")


# ---------------------------------------------------------------------------
# Node interaction
# ---------------------------------------------------------------------------


class NodeUnreachable(PoxError):
    """Transport-level failure talking to the Stacks node."""

    def __init__(self, url: str, detail: str = "") -> None:
        self.url = url
        self.detail = detail
        super().__init__(f"Stacks node request failed: {url}: {detail}")


class ProtocolMismatch(PoxError):
    """The node answered, but not in the shape this client understands."""

    pass


class NodeRejection(PoxError):
    """The node processed the request and reported an application error."""

    def __init__(self, error: str, reason: str | None = None) -> None:
        self.error = error
        self.reason = reason
        message = str(error)
        if reason:
            message += f" - {reason}"
        super().__init__(message)


class ContractCallFailed(NodeRejection):
    pass


class BroadcastRejected(NodeRejection):
    pass
