"""
Session supervisor: connect, run a relay session, restart on failure.
"""

import asyncio
import logging
import signal
import time
from contextlib import suppress
from typing import Any, Awaitable, Callable

from substrateinterface import Keypair

from .config import RelayerConfig
from .errors import ConnectionLost, RpcError
from .event_processor import EventProcessor
from .fastchain import FastchainClient
from .parachain import ParachainClient
from .session import RelaySession
from .utils.substrate_client import SubstrateChainClient

logger = logging.getLogger(__name__)

ChainFactory = Callable[[], tuple[FastchainClient, ParachainClient]]

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1

_STOPPED = object()


def is_connect_retryable(err: BaseException) -> bool:
    return isinstance(err, (ConnectionLost, RpcError, OSError))


class SessionSupervisor:
    """
    Outer loop keeping a relay session running until an explicit stop.

    Each iteration builds fresh chain clients, connects them with bounded
    backoff, and runs one RelaySession. When a session fails, it is torn
    down and a new one starts after a growing delay, reset once a session
    has run longer than the maximum delay.
    """

    def __init__(
        self,
        config: RelayerConfig,
        open_chains: ChainFactory | None = None,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the supervisor.

        Args:
            config: Relayer configuration
            open_chains: Factory for unconnected fastchain/parachain views;
                defaults to substrate-interface clients from the config
            install_signal_handlers: Stop on SIGINT/SIGTERM
        """
        self.config = config
        self._open_chains = open_chains or self._default_open_chains
        self._install_signal_handlers = install_signal_handlers
        self._stop_event: asyncio.Event | None = None
        self._stop_requested = False

        self.session: RelaySession | None = None
        self.sessions_started = 0
        self.restarts = 0

    def _default_open_chains(self) -> tuple[FastchainClient, ParachainClient]:
        fastchain_signer = Keypair.create_from_uri(self.config.fastchain.signer_uri)
        parachain_signer = Keypair.create_from_uri(self.config.parachain.signer_uri)
        timeout = self.config.transactions.timeout

        fastchain = FastchainClient(
            SubstrateChainClient("fastchain", self.config.fastchain.ws_url),
            fastchain_signer,
            timeout,
            EventProcessor(self.config.block_number_bytes),
        )
        parachain = ParachainClient(
            SubstrateChainClient("parachain", self.config.parachain.ws_url),
            parachain_signer,
            timeout,
        )
        logger.info(
            f"Signers: fastchain={fastchain_signer.ss58_address} "
            f"parachain={parachain_signer.ss58_address}"
        )
        return fastchain, parachain

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def stop(self, sig: signal.Signals | None = None) -> None:
        """Request a graceful stop; the running session drains before exiting."""
        if sig is not None:
            logger.info(f"Received {sig.name}, shutting down gracefully...")
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()
        if self.session is not None:
            self.session.stop()

    async def _until_stopped(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless a stop arrives first, returning _STOPPED then."""
        task = asyncio.ensure_future(awaitable)
        stop_wait = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        return _STOPPED

    async def _connect(self, chain: FastchainClient | ParachainClient) -> None:
        policy = self.config.connection.connect_policy(jitter=self.config.transactions.retry_jitter)
        await policy.run(f"connect {chain.name}", chain.connect, retry_if=is_connect_retryable)

    async def _connect_all(self, fastchain: FastchainClient, parachain: ParachainClient) -> None:
        await self._connect(fastchain)
        await self._connect(parachain)

    @staticmethod
    async def _close_all(*chains: FastchainClient | ParachainClient) -> None:
        for chain in chains:
            try:
                await chain.close()
            except Exception as e:
                logger.warning(f"Error closing {chain.name}: {e}")

    def _add_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop, sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    async def run(self) -> int:
        """
        Run sessions until stopped.

        Returns:
            Process exit code: 0 after a graceful stop, 1 if the very first
            connection attempt could not be established
        """
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()
        if self._install_signal_handlers:
            self._add_signal_handlers()

        restart_delay = self.config.connection.restart_delay
        max_delay = self.config.connection.restart_max_delay
        connected_once = False

        try:
            while not self._stop_requested:
                fastchain, parachain = self._open_chains()
                try:
                    result = await self._until_stopped(self._connect_all(fastchain, parachain))
                except Exception as e:
                    await self._close_all(fastchain, parachain)
                    if not connected_once:
                        logger.error(f"Could not connect to chains: {e}")
                        return EXIT_STARTUP_FAILURE
                    logger.error(f"Reconnect failed: {e}")
                    self.restarts += 1
                    await self._until_stopped(asyncio.sleep(restart_delay))
                    restart_delay = min(restart_delay * 2, max_delay)
                    continue

                if result is _STOPPED:
                    await self._close_all(fastchain, parachain)
                    break

                connected_once = True
                self.session = RelaySession(fastchain, parachain, self.config)
                self.sessions_started += 1
                started = time.monotonic()
                try:
                    await self.session.run()
                except Exception as e:
                    logger.error(
                        f"Relay session failed: {e}",
                        exc_info=not isinstance(e, ConnectionLost),
                    )
                finally:
                    self.session = None

                if self._stop_requested:
                    break

                if time.monotonic() - started >= max_delay:
                    restart_delay = self.config.connection.restart_delay
                self.restarts += 1
                logger.warning(
                    f"Restarting relay session in {restart_delay:.1f}s "
                    f"(restart #{self.restarts})"
                )
                await self._until_stopped(asyncio.sleep(restart_delay))
                restart_delay = min(restart_delay * 2, max_delay)
        finally:
            if self._install_signal_handlers:
                self._remove_signal_handlers()

        logger.info("Relayer stopped")
        return EXIT_OK
