"""
Transaction submission with a hard wall-clock timeout.

Turns the status stream of one submitted transaction into a single awaited
outcome: the finalized block hash, or a ``TransactionError`` subclass.
"""

import asyncio
import logging

from substrateinterface import Keypair

from .errors import (
    DispatchError,
    PriorityTooLow,
    RpcError,
    SubmissionTimeout,
    TransactionDropped,
    TransactionInvalid,
    TransactionUsurped,
    is_priority_too_low,
)
from .models import SubmissionStatusKind
from .utils.chain_client import ChainClient

logger = logging.getLogger(__name__)


class TransactionSubmitter:
    """Signs, submits and waits for transactions from one signer on one chain."""

    def __init__(self, client: ChainClient, signer: Keypair, timeout: float):
        """
        Initialize the submitter.

        Args:
            client: Chain client to submit through
            signer: Keypair signing every transaction
            timeout: Seconds to wait for finalization before giving up
        """
        self.client = client
        self.signer = signer
        self.timeout = timeout

    async def submit_and_wait(
        self,
        module: str,
        function: str,
        params: dict,
        label: str,
        sudo: bool = False,
    ) -> str:
        """
        Submit a call and wait until it is finalized.

        Args:
            module: Pallet name
            function: Call name
            params: Call arguments
            label: Operation name for logs and error messages
            sudo: Wrap the call in ``Sudo.sudo``

        Returns:
            Hash of the block the transaction was finalized in

        Raises:
            PriorityTooLow: The pool rejected the transaction (code 1014)
            TransactionInvalid: The pool reported the transaction invalid
            TransactionDropped: The transaction left the pool unfinalized
            TransactionUsurped: Another transaction took the same nonce
            DispatchError: The runtime rejected the call
            SubmissionTimeout: No finalization within the timeout; the
                transaction may still finalize later
        """
        try:
            return await asyncio.wait_for(
                self._submit(module, function, params, label, sudo),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise SubmissionTimeout(
                f"{label} not finalized within {self.timeout:.0f}s", label=label
            ) from None

    async def _submit(
        self,
        module: str,
        function: str,
        params: dict,
        label: str,
        sudo: bool,
    ) -> str:
        try:
            statuses = await self.client.submit(module, function, params, self.signer, sudo=sudo)
        except RpcError as e:
            if is_priority_too_low(e):
                raise PriorityTooLow(f"{label} rejected: {e}", label=label) from e
            raise

        try:
            async for status in statuses:
                match status.kind:
                    case SubmissionStatusKind.IN_BLOCK:
                        logger.debug(f"{label} in block {status.block_hash}")
                    case SubmissionStatusKind.FINALIZED:
                        logger.info(f"{label} finalized in block {status.block_hash}")
                        return status.block_hash
                    case SubmissionStatusKind.DISPATCH_FAILURE:
                        raise DispatchError(label, status.section, status.name)
                    case SubmissionStatusKind.INVALID:
                        raise TransactionInvalid(f"{label} invalid", label=label)
                    case SubmissionStatusKind.DROPPED:
                        raise TransactionDropped(f"{label} dropped", label=label)
                    case SubmissionStatusKind.USURPED:
                        raise TransactionUsurped(f"{label} usurped", label=label)
        except RpcError as e:
            if is_priority_too_low(e):
                raise PriorityTooLow(f"{label} rejected: {e}", label=label) from e
            raise
        finally:
            statuses.unsubscribe()

        raise TransactionDropped(f"{label} status stream ended before finalization", label=label)
