"""
Error taxonomy for the spin finality relayer.

Errors fall into four classes that drive different recovery paths:

- transient pool/network errors, retried in place with backoff
  (see ``is_retryable_rpc_error``)
- authority set mismatches, which trigger the multi-step recovery
  in the proof forwarder (see ``is_authority_set_mismatch``)
- dispatch errors, fatal for the task that produced them
- connection loss, fatal for the whole relay session
"""

POOL_PRIORITY_CODE = "1014"

PRIORITY_TOO_LOW_MESSAGES = (
    "Priority is too low",
    "too low priority to replace another transaction already in the pool",
)

TRANSIENT_RPC_MESSAGES = (
    "WebSocket is not connected",
    "disconnected",
    "ECONNRESET",
    "ETIMEDOUT",
    "Timeout",
    "timed out",
)


class RelayerError(Exception):
    """Base class for all relayer errors."""


class ConnectionLost(RelayerError):
    """The connection to a chain node is unusable; the session must restart."""


class ProofDecodeError(RelayerError):
    """A notification could not be decoded into a finality proof."""


class RpcError(RelayerError):
    """A JSON-RPC request was rejected by the node."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransactionError(RelayerError):
    """A submitted transaction did not reach finality successfully."""

    def __init__(self, message: str, label: str | None = None) -> None:
        super().__init__(message)
        self.label = label


class PriorityTooLow(TransactionError):
    """The transaction pool rejected the transaction for low priority (1014)."""


class TransactionInvalid(TransactionError):
    """The transaction pool reported the transaction as invalid."""


class TransactionDropped(TransactionError):
    """The transaction was dropped from the pool."""


class TransactionUsurped(TransactionError):
    """Another transaction replaced this one at the same nonce."""


class SubmissionTimeout(TransactionError):
    """The transaction did not finalize within the configured timeout."""


class DispatchError(TransactionError):
    """The runtime rejected the transaction's call.

    Attributes:
        section: Pallet that raised the error
        name: Error variant name
    """

    def __init__(self, label: str, section: str, name: str) -> None:
        super().__init__(f"{label} failed: {section}.{name}", label=label)
        self.section = section
        self.name = name


def is_connection_error(err: BaseException) -> bool:
    return isinstance(err, ConnectionLost)


def is_priority_too_low(err: BaseException) -> bool:
    """Check whether an error is a pool rejection for low relative priority."""
    if isinstance(err, PriorityTooLow):
        return True
    message = str(err)
    return POOL_PRIORITY_CODE in message and any(
        text in message for text in PRIORITY_TOO_LOW_MESSAGES
    )


def is_authority_set_mismatch(err: BaseException) -> bool:
    """Check whether the parachain rejected a proof for the wrong authority set."""
    if isinstance(err, DispatchError):
        return err.name == "AuthoritySetMismatch"
    return "AuthoritySetMismatch" in str(err)


def is_retryable_rpc_error(err: BaseException) -> bool:
    """
    Check whether an error is a transient pool or network failure.

    Connection loss is never retryable here; the session restart
    reconnects with its own backoff.

    Args:
        err: Error raised by a chain call or submission

    Returns:
        True if retrying the same operation may succeed
    """
    if is_connection_error(err) or isinstance(err, DispatchError):
        return False
    if is_priority_too_low(err) or isinstance(err, SubmissionTimeout):
        return True
    message = str(err)
    return any(text in message for text in TRANSIENT_RPC_MESSAGES)
