"""
Proof forwarder: the fastchain-to-parachain finality pipeline.

For each finality proof:

1. resolve the authority set valid at the proof's target block
2. reconcile the parachain's authority set (parachain queue)
3. submit the proof, retrying only pool priority rejections
4. on an authority set mismatch, refresh at the target block, then at its
   parent, resubmitting once after each refresh
5. acknowledge the anchoring on the fastchain (fastchain queue)
"""

import logging

from .authority_tracker import AuthorityTracker
from .errors import (
    ConnectionLost,
    is_authority_set_mismatch,
    is_priority_too_low,
    is_retryable_rpc_error,
)
from .fastchain import FastchainClient
from .models import AuthoritySetSnapshot, FinalityProof
from .parachain import ParachainClient
from .retry import RetryPolicy
from .task_queues import SerialQueue
from .utils.state_manager import RelayerCache

logger = logging.getLogger(__name__)

# Blocks to refresh the authority set at after a mismatch, in order.
MISMATCH_RECOVERY_STEPS = ("target", "parent")


class ProofForwarder:
    """Forwards finality proofs to the parachain and acknowledges them on the fastchain."""

    def __init__(
        self,
        fastchain: FastchainClient,
        parachain: ParachainClient,
        tracker: AuthorityTracker,
        cache: RelayerCache,
        parachain_queue: SerialQueue,
        fastchain_queue: SerialQueue,
        retry_policy: RetryPolicy,
    ):
        self.fastchain = fastchain
        self.parachain = parachain
        self.tracker = tracker
        self.cache = cache
        self.parachain_queue = parachain_queue
        self.fastchain_queue = fastchain_queue
        self.retry_policy = retry_policy

        self.forwarded = 0
        self.dropped = 0
        self.recovered = 0
        self.last_anchored: int | None = None

    async def handle(self, proof: FinalityProof) -> bool:
        """
        Forward one proof, logging and dropping it on any unrecovered error.

        A dropped proof is never acknowledged on the fastchain, so a later
        proof covers it. Connection loss is re-raised to end the session.

        Args:
            proof: Finality proof to forward

        Returns:
            True if the proof was forwarded and acknowledged
        """
        try:
            await self.forward(proof)
            return True
        except ConnectionLost:
            raise
        except Exception as e:
            self.dropped += 1
            snapshot = self.cache.current
            logger.error(
                f"Dropping finality proof upTo={proof.target_number} "
                f"hash={proof.target_hash} "
                f"(last synchronized setId={snapshot.set_id if snapshot else None}): {e}",
                exc_info=True,
            )
            return False

    async def resolve_authority_set(
        self, block_hash: str, use_cache: bool = True
    ) -> AuthoritySetSnapshot:
        """
        Resolve the authority set valid at ``block_hash``.

        Args:
            block_hash: Fastchain block to resolve at
            use_cache: Reuse a cached snapshot for the set id when present;
                a fresh fetch always replaces the cached entry

        Returns:
            AuthoritySetSnapshot valid at the block
        """
        set_id = await self.fastchain.set_id_at(block_hash)
        if use_cache:
            cached = self.cache.get(set_id)
            if cached is not None:
                return cached

        authorities = await self.fastchain.authorities_at(block_hash)
        snapshot = AuthoritySetSnapshot(set_id, tuple(authorities))
        self.cache.put(snapshot)
        return snapshot

    async def forward(self, proof: FinalityProof) -> int:
        """
        Run the full pipeline for one proof.

        Returns:
            The set id the parachain accepted the proof under

        Raises:
            Any error not recovered by the pipeline
        """
        snapshot = await self.resolve_authority_set(proof.target_hash)
        logger.info(
            f"Forwarding finality proof upTo={proof.target_number} "
            f"hash={proof.target_hash} setId={snapshot.set_id} len={len(proof.raw)}"
        )

        accepted_set_id = await self.parachain_queue.run(
            lambda: self._submit_with_recovery(proof, snapshot)
        )

        label = f"note_anchor_verified({proof.target_number})"
        await self.fastchain_queue.run(
            lambda: self.retry_policy.run(
                label,
                lambda: self.fastchain.note_anchor_verified(proof.target_number),
                retry_if=is_retryable_rpc_error,
            )
        )

        self.forwarded += 1
        self.last_anchored = proof.target_number
        logger.info(f"Anchored fastchain up to block {proof.target_number} (setId={accepted_set_id})")
        return accepted_set_id

    async def _submit_with_recovery(
        self, proof: FinalityProof, snapshot: AuthoritySetSnapshot
    ) -> int:
        await self.tracker.ensure_authority_set(snapshot)
        try:
            await self._send(proof, snapshot.set_id)
            return snapshot.set_id
        except Exception as e:
            if not is_authority_set_mismatch(e):
                raise
            error = e

        for step in MISMATCH_RECOVERY_STEPS:
            if step == "target":
                block_hash = proof.target_hash
            else:
                block_hash = await self.fastchain.parent_hash(proof.target_hash)

            logger.warning(
                f"AuthoritySetMismatch for upTo={proof.target_number}: refreshing authority "
                f"set at {step} block {block_hash} and retrying once ({error})"
            )
            snapshot = await self.resolve_authority_set(block_hash, use_cache=False)
            await self.tracker.ensure_authority_set(snapshot)
            try:
                await self._send(proof, snapshot.set_id)
            except Exception as e:
                if not is_authority_set_mismatch(e):
                    raise
                error = e
                continue
            self.recovered += 1
            return snapshot.set_id

        raise error

    async def _send(self, proof: FinalityProof, set_id: int) -> None:
        await self.retry_policy.run(
            f"submit_finality_proof({proof.target_number})",
            lambda: self.parachain.submit_finality_proof(set_id, proof),
            retry_if=is_priority_too_low,
        )

    def get_stats(self) -> dict:
        return {
            'forwarded': self.forwarded,
            'dropped': self.dropped,
            'recovered': self.recovered,
            'last_anchored': self.last_anchored,
        }
