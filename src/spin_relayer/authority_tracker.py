"""
Authority tracker keeping the parachain's copy of the fastchain authority set current.
"""

import logging

from .authority_set import authorities_equal
from .errors import ConnectionLost, is_retryable_rpc_error
from .fastchain import FastchainClient
from .models import AuthoritySetSnapshot
from .parachain import ParachainClient
from .retry import RetryPolicy
from .task_queues import SerialQueue
from .utils.state_manager import RelayerCache

logger = logging.getLogger(__name__)


class AuthorityTracker:
    """
    Watches the fastchain GRANDPA set id and mirrors authority sets to the parachain.

    ``ensure_authority_set`` is also called speculatively before every proof,
    so it must stay a cheap no-op whenever the parachain is already in sync.
    """

    def __init__(
        self,
        fastchain: FastchainClient,
        parachain: ParachainClient,
        cache: RelayerCache,
        parachain_queue: SerialQueue,
        retry_policy: RetryPolicy,
    ):
        """
        Initialize the tracker.

        Args:
            fastchain: Fastchain view to read authority sets from
            parachain: Parachain view holding the mirrored set
            cache: Session authority set cache
            parachain_queue: Serial queue for parachain submissions
            retry_policy: Backoff for the sudo update transaction
        """
        self.fastchain = fastchain
        self.parachain = parachain
        self.cache = cache
        self.parachain_queue = parachain_queue
        self.retry_policy = retry_policy

        self.updates_submitted = 0
        self.updates_skipped = 0
        self.set_id_changes = 0

    async def ensure_authority_set(self, snapshot: AuthoritySetSnapshot) -> bool:
        """
        Make the parachain's stored authority set equal ``snapshot``.

        Must run inside the parachain serial queue; it does not enqueue
        itself so it can be combined with a proof submission in one task.

        Args:
            snapshot: Desired authority set

        Returns:
            True if an update transaction was submitted, False if the
            parachain already matched
        """
        current = await self.parachain.current_authority_set()
        if (
            current is not None
            and current.set_id == snapshot.set_id
            and authorities_equal(current.entries, snapshot.entries)
        ):
            self.updates_skipped += 1
            logger.debug(f"Parachain authority set already at setId={snapshot.set_id}")
            return False

        logger.info(
            f"Updating parachain authority set: setId={snapshot.set_id} "
            f"size={len(snapshot.entries)} "
            f"(parachain has setId={current.set_id if current else None})"
        )
        await self.retry_policy.run(
            f"set_authority_set({snapshot.set_id})",
            lambda: self.parachain.set_authority_set(snapshot),
            retry_if=is_retryable_rpc_error,
        )
        self.updates_submitted += 1
        return True

    async def synchronize(self, snapshot: AuthoritySetSnapshot) -> bool:
        """Run ``ensure_authority_set`` through the parachain queue and record the result."""
        changed = await self.parachain_queue.run(lambda: self.ensure_authority_set(snapshot))
        self.cache.current = snapshot
        return changed

    async def initial_sync(self) -> AuthoritySetSnapshot | None:
        """
        Mirror the authority set at the fastchain tip before any proof is forwarded.

        Best effort: failures other than connection loss are logged and the
        session continues, since every proof re-checks the authority set.

        Returns:
            The synchronized snapshot, or None if the sync failed
        """
        try:
            snapshot = await self.fastchain.authority_set_at()
            self.cache.put(snapshot)
            await self.synchronize(snapshot)
        except ConnectionLost:
            raise
        except Exception as e:
            logger.warning(f"Initial authority set sync failed (will retry on next proof): {e}")
            return None

        logger.info(f"Initial authority set synchronized: {snapshot}")
        return snapshot

    async def handle_set_id_change(self, set_id: int) -> bool:
        """
        React to a fastchain set id notification.

        Fetches the authority list at the tip and synchronizes only if the
        set id or the entries differ from the last synchronized snapshot.

        Args:
            set_id: Set id carried by the notification

        Returns:
            True if a synchronization ran and succeeded
        """
        self.set_id_changes += 1
        try:
            authorities = await self.fastchain.authorities_at()
            snapshot = AuthoritySetSnapshot(set_id, tuple(authorities))

            previous = self.cache.current
            if previous == snapshot:
                logger.debug(f"Authority set unchanged at setId={set_id}")
                return False

            logger.info(
                f"Fastchain authority set changed: setId "
                f"{previous.set_id if previous else None} -> {set_id}"
            )
            self.cache.put(snapshot)
            await self.synchronize(snapshot)
            return True
        except ConnectionLost:
            raise
        except Exception as e:
            logger.error(f"Authority set sync failed for setId={set_id}: {e}", exc_info=True)
            return False

    def get_stats(self) -> dict[str, int]:
        return {
            'updates_submitted': self.updates_submitted,
            'updates_skipped': self.updates_skipped,
            'set_id_changes': self.set_id_changes,
        }
