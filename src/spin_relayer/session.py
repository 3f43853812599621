"""
Relay session implementation.

A session owns one connection per chain and wires the fastchain's set id
and finality streams into the authority tracker and the proof forwarder.
It runs until stopped, until a stream or a connection breaks, or until a
task reports a fatal error; shutdown always drains in-flight work before
the connections are closed.
"""

import asyncio
import logging
import time
from typing import Any

from .authority_tracker import AuthorityTracker
from .config import RelayerConfig
from .errors import ConnectionLost, RelayerError
from .fastchain import FastchainClient
from .parachain import ParachainClient
from .proof_forwarder import ProofForwarder
from .task_queues import LatestTaskRunner, SerialQueue
from .utils.chain_client import Subscription
from .utils.state_manager import RelayerCache

logger = logging.getLogger(__name__)

STRATEGY_JUSTIFICATIONS = "justifications"
STRATEGY_FINALIZED_HEADS = "finalized-heads"


class RelaySession:
    """
    One connected run of the relayer.

    This class focuses on wiring and lifecycle; forwarding and authority
    synchronization live in ProofForwarder and AuthorityTracker.
    """

    HEALTH_CHECK_INTERVAL = 1.0  # seconds

    def __init__(
        self,
        fastchain: FastchainClient,
        parachain: ParachainClient,
        config: RelayerConfig,
    ):
        """
        Initialize the relay session.

        Args:
            fastchain: Connected fastchain view
            parachain: Connected parachain view
            config: Relayer configuration
        """
        self.fastchain = fastchain
        self.parachain = parachain
        self.config = config
        self.running = False
        self.stop_requested = False
        self.shutdown_event = asyncio.Event()
        self.fatal_error: BaseException | None = None
        self.strategy: str | None = None
        self.started_at: float | None = None

        retry_policy = config.transactions.retry_policy()
        self.cache = RelayerCache()
        self.processor = fastchain.processor
        self.parachain_queue = SerialQueue("parachain-tx")
        self.fastchain_queue = SerialQueue("fastchain-tx")
        self.tracker = AuthorityTracker(
            fastchain=fastchain,
            parachain=parachain,
            cache=self.cache,
            parachain_queue=self.parachain_queue,
            retry_policy=retry_policy,
        )
        self.forwarder = ProofForwarder(
            fastchain=fastchain,
            parachain=parachain,
            tracker=self.tracker,
            cache=self.cache,
            parachain_queue=self.parachain_queue,
            fastchain_queue=self.fastchain_queue,
            retry_policy=retry_policy,
        )
        self.proof_runner = LatestTaskRunner("proof", on_fatal=self._fail)
        self.authority_runner = LatestTaskRunner("authority", on_fatal=self._fail)

        self.subscriptions: list[Subscription] = []
        self._stopping = False

    def _fail(self, error: BaseException) -> None:
        """Record the first fatal error and wake the main loop."""
        if self.fatal_error is None:
            self.fatal_error = error
        self.shutdown_event.set()

    async def start(self) -> dict[str, Any]:
        """
        Synchronize the authority set and open the notification streams.

        Returns:
            Pump coroutines keyed by task name, ready to be scheduled
        """
        await self.tracker.initial_sync()

        set_ids = await self.fastchain.subscribe_set_id_changes()
        self.subscriptions.append(set_ids)

        proofs = None
        if await self.fastchain.supports_justification_stream():
            try:
                proofs = await self.fastchain.subscribe_justifications()
            except ConnectionLost:
                raise
            except Exception as e:
                logger.warning(f"Justification stream unavailable: {e}")

        if proofs is not None:
            self.strategy = STRATEGY_JUSTIFICATIONS
            self.subscriptions.append(proofs)
            proof_pump = self._pump_justifications(proofs)
            logger.info("Subscribed to GRANDPA justification stream")
        else:
            heads = await self.fastchain.subscribe_finalized_heads()
            self.strategy = STRATEGY_FINALIZED_HEADS
            self.subscriptions.append(heads)
            proof_pump = self._pump_finalized_heads(heads)
            logger.info("Falling back to finalized heads + grandpa_proveFinality")

        return {
            "set_ids": self._pump_set_ids(set_ids),
            "proofs": proof_pump,
        }

    async def _pump_set_ids(self, stream: Subscription) -> None:
        async for notification in stream:
            set_id = self.processor.process_set_id(notification)
            if set_id is None:
                continue
            self.authority_runner.enqueue(
                lambda set_id=set_id: self.tracker.handle_set_id_change(set_id)
            )
        self._stream_ended(stream)

    async def _pump_justifications(self, stream: Subscription) -> None:
        async for notification in stream:
            proof = self.processor.process_justification(notification)
            if proof is None:
                continue
            logger.debug(f"Received justification upTo={proof.target_number}")
            self.proof_runner.enqueue(lambda proof=proof: self.forwarder.handle(proof))
        self._stream_ended(stream)

    async def _pump_finalized_heads(self, stream: Subscription) -> None:
        async for notification in stream:
            header = self.processor.process_header(notification)
            if header is None:
                continue
            self.proof_runner.enqueue(
                lambda number=header.number: self._pull_and_forward(number)
            )
        self._stream_ended(stream)

    def _stream_ended(self, stream: Subscription) -> None:
        if not self._stopping:
            raise RelayerError(f"Subscription {stream.name} ended unexpectedly")

    async def _pull_and_forward(self, block_number: int) -> None:
        """Pull the finality proof for a finalized head and forward it."""
        proof = await self.fastchain.prove_finality(block_number)
        if proof is None:
            logger.debug(f"No finality proof available for block {block_number}")
            return
        logger.info(f"Pulled finality proof for head {block_number} (upTo={proof.target_number})")
        await self.forwarder.handle(proof)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.forwarder.get_stats(),
            'superseded': self.proof_runner.superseded,
            'invalid': self.processor.invalid,
            'cache': self.cache.get_stats(),
            'tracker': self.tracker.get_stats(),
            'queues': {
                'parachain': self.parachain_queue.get_stats(),
                'fastchain': self.fastchain_queue.get_stats(),
            },
            'runners': {
                'proof': self.proof_runner.get_stats(),
                'authority': self.authority_runner.get_stats(),
            },
        }

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.config.status_log_interval)
            stats = self.get_stats()
            logger.info(
                f"Status: {stats['forwarded']} proofs forwarded, "
                f"{stats['dropped']} dropped, {stats['superseded']} superseded, "
                f"{stats['invalid']} invalid, last anchored {stats['last_anchored']}"
            )
            logger.debug(
                f"Queues: {stats['queues']}, runners: {stats['runners']}, "
                f"tracker: {stats['tracker']}, cache: {stats['cache']}"
            )

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed or a connection dropped."""
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                try:
                    await task
                    self._fail(RelayerError(f"{name} task ended unexpectedly"))
                except asyncio.CancelledError:
                    self._fail(RelayerError(f"{name} task was cancelled"))
                except Exception as e:
                    logger.error(f"{name} task failed: {e}")
                    self._fail(e)
                return False

        for chain in (self.fastchain, self.parachain):
            if chain.disconnected.is_set():
                self._fail(ConnectionLost(f"{chain.name} disconnected"))
                return False
        return True

    async def shutdown(self, tasks: dict[str, asyncio.Task]) -> None:
        """
        Stop accepting events, drain in-flight work, then close both connections.

        Draining has no timeout: shutdown waits for running submissions to
        settle, bounded only by the submission timeout and retry policy.
        """
        self._stopping = True
        self.running = False

        for subscription in self.subscriptions:
            subscription.unsubscribe()
        self.subscriptions.clear()

        self.proof_runner.close()
        self.authority_runner.close()

        # Cancel pump and status tasks
        for name, task in tasks.items():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling

        logger.info("Draining task runners and submission queues...")
        await asyncio.gather(self.proof_runner.drain(), self.authority_runner.drain())
        await asyncio.gather(self.parachain_queue.drain(), self.fastchain_queue.drain())

        await self.fastchain.close()
        await self.parachain.close()

    async def run(self) -> None:
        """
        Run the session until it is stopped or fails.

        Raises:
            ConnectionLost: A chain connection broke
            RelayerError: A stream ended or a task failed fatally
        """
        self.running = True
        self.started_at = time.monotonic()
        logger.info("Relay session starting...")

        tasks: dict[str, asyncio.Task] = {}
        try:
            pumps = await self.start()
            tasks = {name: asyncio.create_task(pump) for name, pump in pumps.items()}
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())
            logger.info(f"Relay session running (strategy: {self.strategy})")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(
                        self.shutdown_event.wait(), timeout=self.HEALTH_CHECK_INTERVAL
                    )
                    break  # Shutdown requested or fatal error
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not await self._check_task_health(tasks):
                    logger.error("Critical session failure, shutting down")
                    break
        finally:
            await self.shutdown(tasks)
            logger.info(f"Relay session stopped: {self.get_stats()}")

        if self.fatal_error is not None and not self.stop_requested:
            raise self.fatal_error

    def stop(self) -> None:
        """Request a graceful stop."""
        self.stop_requested = True
        self.running = False
        self.shutdown_event.set()
