"""
substrate-interface adapter implementing the relayer's chain client.

substrate-interface is synchronous and not thread-safe, so every blocking
call runs in a worker thread via ``asyncio.to_thread``:

- point queries, call composition, signing and receipts share one
  connection, serialized by an asyncio lock
- transaction watches use a second connection, one watch at a time; a
  watch abandoned by its caller closes that connection, which is reopened
  for the next submission
- every subscription gets a dedicated connection on a daemon thread,
  whose notifications hop back to the event loop thread-safely
"""

import asyncio
import logging
import threading
from typing import Any, Callable

from scalecodec.base import ScaleBytes
from substrateinterface import ExtrinsicReceipt, Keypair, SubstrateInterface
from substrateinterface.exceptions import SubstrateRequestException
from websocket import WebSocketException

from ..errors import ConnectionLost, RelayerError, RpcError
from ..models import (
    EventKind,
    SubmissionStatus,
    SubmissionStatusKind,
)
from .chain_client import Subscription
from .scale_decoder import ScaleDecoder

logger = logging.getLogger(__name__)

SUBSCRIBE_METHODS = {
    EventKind.NEW_HEADS: "chain_subscribeNewHeads",
    EventKind.FINALIZED_HEADS: "chain_subscribeFinalizedHeads",
    EventKind.FINALITY_JUSTIFICATIONS: "grandpa_subscribeJustifications",
}


class SubstrateChainClient:
    """
    Chain client backed by substrate-interface over a websocket endpoint.
    """

    def __init__(self, name: str, url: str):
        """
        Initialize the client without connecting.

        Args:
            name: Chain name used in log messages ("fastchain", "parachain")
            url: Websocket endpoint (ws:// or wss://)
        """
        self.name = name
        self.url = url
        self.disconnected = asyncio.Event()

        self._substrate: SubstrateInterface | None = None
        self._watch_substrate: SubstrateInterface | None = None
        self._lock = asyncio.Lock()
        self._submit_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscriptions: list[Subscription] = []
        self._watches: set[asyncio.Task] = set()
        self._active_watch: threading.Event | None = None

    def _open(self) -> SubstrateInterface:
        return SubstrateInterface(url=self.url, auto_reconnect=False)

    async def _open_connection(self) -> SubstrateInterface:
        """Open a connection in a worker thread, closing it if the caller is cancelled meanwhile."""
        opening = asyncio.ensure_future(asyncio.to_thread(self._open))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(self._close_abandoned)
            raise

    def _close_abandoned(self, opening: asyncio.Future) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        logger.debug(f"{self.name}: closing connection opened after cancellation")
        self._close_in_background(opening.result())

    def _close_in_background(self, substrate: SubstrateInterface) -> None:
        asyncio.get_running_loop().run_in_executor(None, self._close_quietly, substrate)

    def _close_quietly(self, substrate: SubstrateInterface) -> None:
        try:
            substrate.close()
        except Exception as e:
            logger.debug(f"{self.name}: error while closing connection: {e}")

    async def connect(self) -> None:
        """
        Open the query and watch connections and load runtime metadata.

        Raises:
            ConnectionLost: If the node is unreachable
        """
        self._loop = asyncio.get_running_loop()
        self.disconnected.clear()
        try:
            self._substrate = await self._open_connection()
            self._watch_substrate = await self._open_connection()
        except Exception as e:
            await self.close()
            raise self._map_error(e) from e

        await self._call(self._substrate.init_runtime)
        logger.info(
            f"Connected to {self.name} at {self.url} "
            f"(runtime version {self._substrate.runtime_version})"
        )

    async def close(self) -> None:
        """Unsubscribe all streams and close both connections. Never raises."""
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        for substrate in (self._watch_substrate, self._substrate):
            if substrate is not None:
                self._close_quietly(substrate)
        self._substrate = None
        self._watch_substrate = None

    def _map_error(self, error: BaseException) -> BaseException:
        match error:
            case RelayerError():
                return error
            case SubstrateRequestException():
                detail = error.args[0] if error.args else None
                code = detail.get("code") if isinstance(detail, dict) else None
                return RpcError(f"{self.name}: {error}", code=code)
            case WebSocketException() | ConnectionError() | OSError():
                return ConnectionLost(f"{self.name} connection lost: {error}")
            case _:
                return error

    def _mark_disconnected(self) -> None:
        if self._loop is not None and not self.disconnected.is_set():
            self._loop.call_soon_threadsafe(self.disconnected.set)

    def _require(self) -> SubstrateInterface:
        if self._substrate is None:
            raise ConnectionLost(f"{self.name} is not connected")
        return self._substrate

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        self._require()
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except Exception as e:
                error = self._map_error(e)
                if isinstance(error, ConnectionLost):
                    self.disconnected.set()
                if error is e:
                    raise
                raise error from e

    async def query(
        self,
        module: str,
        storage: str,
        params: list | None = None,
        block_hash: str | None = None,
    ) -> Any:
        """Read a storage value, at the tip or at ``block_hash``."""
        result = await self._call(
            self._require().query, module, storage, params or [], block_hash=block_hash
        )
        return result.value if result is not None else None

    async def runtime_call(
        self,
        api: str,
        method: str,
        params: list | None = None,
        block_hash: str | None = None,
    ) -> Any:
        """Call a runtime API, at the tip or at ``block_hash``."""
        result = await self._call(
            self._require().runtime_call, api, method, params or [], block_hash
        )
        return result.value if result is not None else None

    async def rpc(self, method: str, params: list) -> Any:
        """Send a raw JSON-RPC request and return its ``result`` field."""
        response = await self._call(self._require().rpc_request, method, params)
        return response.get("result")

    async def rpc_methods(self) -> list[str]:
        result = await self.rpc("rpc_methods", [])
        return list((result or {}).get("methods", []))

    async def get_header(self, block_hash: str | None = None):
        header = await self.rpc("chain_getHeader", [block_hash] if block_hash else [])
        return ScaleDecoder.decode_header(header, block_hash)

    async def subscribe(self, kind: EventKind) -> Subscription:
        """
        Open a notification stream on a dedicated connection.

        Args:
            kind: Which stream to open

        Returns:
            Subscription yielding raw notification payloads (storage values
            for set id changes)
        """
        if kind is not EventKind.AUTHORITY_SET_ID_CHANGES and kind not in SUBSCRIBE_METHODS:
            raise ValueError(f"Unsupported subscription kind: {kind}")

        stop = threading.Event()
        connections: list[SubstrateInterface] = []

        def cancel() -> None:
            stop.set()
            for substrate in connections:
                substrate.close()

        subscription = Subscription(f"{self.name}:{kind.value}", on_unsubscribe=cancel)
        thread = threading.Thread(
            target=self._run_subscription,
            args=(kind, subscription, stop, connections),
            name=f"{self.name}-{kind.value}",
            daemon=True,
        )
        thread.start()
        self._subscriptions.append(subscription)
        logger.debug(f"{self.name}: subscribed to {kind.value}")
        return subscription

    def _run_subscription(
        self,
        kind: EventKind,
        subscription: Subscription,
        stop: threading.Event,
        connections: list[SubstrateInterface],
    ) -> None:
        substrate = None
        try:
            substrate = self._open()
            connections.append(substrate)
            if stop.is_set():
                return

            def on_message(message: dict, update_nr: int, subscription_id: str) -> Any:
                if stop.is_set():
                    return True
                subscription.push_threadsafe(message["params"]["result"])
                return None

            def on_storage(value: Any, update_nr: int, subscription_id: str) -> Any:
                if stop.is_set():
                    return True
                subscription.push_threadsafe(value.value)
                return None

            if kind is EventKind.AUTHORITY_SET_ID_CHANGES:
                substrate.query("Grandpa", "CurrentSetId", subscription_handler=on_storage)
            else:
                substrate.rpc_request(SUBSCRIBE_METHODS[kind], [], result_handler=on_message)
            subscription.finish_threadsafe()
        except Exception as e:
            if stop.is_set():
                subscription.finish_threadsafe()
                return
            error = self._map_error(e)
            if isinstance(error, ConnectionLost):
                self._mark_disconnected()
            subscription.fail_threadsafe(error)
        finally:
            if substrate is not None and not stop.is_set():
                try:
                    substrate.close()
                except Exception:
                    logger.debug(f"{self.name}: error closing {kind.value} connection")

    async def submit(
        self,
        module: str,
        function: str,
        params: dict,
        signer: Keypair,
        sudo: bool = False,
    ) -> Subscription[SubmissionStatus]:
        """
        Sign and submit a call, watching it until a terminal status.

        The nonce is read from the node right before signing, so each
        submission must be serialized per signer by the caller. Unsubscribing
        abandons the watch: a transaction not yet sent is never sent, and a
        watch in progress is cut off by closing its connection.

        Args:
            module: Pallet name
            function: Call name
            params: Call arguments; bytes values are passed pre-encoded
            signer: Signing keypair
            sudo: Wrap the call in ``Sudo.sudo``

        Returns:
            Subscription of status updates, ending after the terminal one
        """
        call_params = {
            key: ScaleBytes(bytearray(value)) if isinstance(value, (bytes, bytearray)) else value
            for key, value in params.items()
        }
        extrinsic = await self._call(
            self._build_extrinsic, module, function, call_params, signer, sudo
        )

        stop = threading.Event()

        def abandon() -> None:
            stop.set()
            if self._active_watch is stop:
                self._drop_watch_connection()

        subscription: Subscription[SubmissionStatus] = Subscription(
            f"{self.name}:{module}.{function}", on_unsubscribe=abandon
        )
        watch = asyncio.create_task(self._watch(extrinsic, subscription, stop, module, sudo))
        self._watches.add(watch)
        watch.add_done_callback(self._watches.discard)
        return subscription

    def _build_extrinsic(
        self,
        module: str,
        function: str,
        params: dict,
        signer: Keypair,
        sudo: bool,
    ):
        call = self._substrate.compose_call(
            call_module=module, call_function=function, call_params=params
        )
        if sudo:
            call = self._substrate.compose_call(
                call_module="Sudo", call_function="sudo", call_params={"call": call.value}
            )
        # counts transactions still in the pool
        nonce = self._substrate.rpc_request(
            "system_accountNextIndex", [signer.ss58_address]
        )["result"]
        logger.debug(f"{self.name}: signing {module}.{function} with nonce {nonce}")
        return self._substrate.create_signed_extrinsic(call=call, keypair=signer, nonce=nonce)

    async def _watch(
        self,
        extrinsic,
        subscription: Subscription[SubmissionStatus],
        stop: threading.Event,
        module: str,
        sudo: bool,
    ) -> None:
        try:
            async with self._submit_lock:
                if self._watch_substrate is None and not stop.is_set():
                    self._require()
                    self._watch_substrate = await self._open_connection()
                if stop.is_set():
                    logger.debug(f"{subscription.name}: abandoned before sending")
                    subscription.finish()
                    return
                self._active_watch = stop
                try:
                    final = await asyncio.to_thread(
                        self._watch_blocking, self._watch_substrate, extrinsic, subscription, stop
                    )
                finally:
                    self._active_watch = None
            if isinstance(final, SubmissionStatus) and final.kind is SubmissionStatusKind.FINALIZED:
                failure = await self._call(
                    self._dispatch_failure, extrinsic, final.block_hash, module, sudo
                )
                if failure is not None:
                    section, name = failure
                    subscription.push(
                        SubmissionStatus.dispatch_failure(section, name, final.block_hash)
                    )
                else:
                    subscription.push(final)
            subscription.finish()
        except Exception as e:
            if stop.is_set():
                logger.debug(f"{subscription.name}: watch abandoned: {e}")
                subscription.finish()
                return
            error = self._map_error(e)
            if isinstance(error, ConnectionLost):
                self.disconnected.set()
            subscription.fail(error)

    def _drop_watch_connection(self) -> None:
        substrate, self._watch_substrate = self._watch_substrate, None
        if substrate is not None:
            logger.warning(f"{self.name}: closing watch connection of an abandoned submission")
            self._close_in_background(substrate)

    @staticmethod
    def _watch_blocking(
        substrate: SubstrateInterface,
        extrinsic,
        subscription: Subscription[SubmissionStatus],
        stop: threading.Event,
    ) -> Any:
        def on_update(message: dict, update_nr: int, subscription_id: str) -> Any:
            status = ScaleDecoder.decode_extrinsic_status(message["params"]["result"])
            if status is None:
                return True if stop.is_set() else None
            if status.kind is SubmissionStatusKind.FINALIZED:
                return status
            subscription.push_threadsafe(status)
            if status.is_terminal or stop.is_set():
                return status
            return None

        return substrate.rpc_request(
            "author_submitAndWatchExtrinsic", [str(extrinsic.data)], result_handler=on_update
        )

    def _dispatch_failure(
        self, extrinsic, block_hash: str, module: str, sudo: bool
    ) -> tuple[str, str] | None:
        """Return (section, name) if the finalized extrinsic failed to dispatch."""
        receipt = ExtrinsicReceipt(
            substrate=self._substrate,
            extrinsic_hash=f"0x{extrinsic.extrinsic_hash.hex()}",
            block_hash=block_hash,
        )
        if not receipt.is_success:
            error = receipt.error_message or {}
            match error:
                case {"section": section, "name": name}:
                    return section, name
                case {"type": "Module", "name": name}:
                    return module, name
                case {"type": kind, "name": name}:
                    return kind, name
                case _:
                    return module, "Unknown"

        if sudo:
            for event in receipt.triggered_events:
                value = event.value
                if value.get("module_id") != "Sudo" or value.get("event_id") != "Sudid":
                    continue
                match value.get("attributes"):
                    case {"sudo_result": {"Err": {"Module": {"index": index, "error": error}}}}:
                        return module, self._module_error_name(index, error)
                    case {"sudo_result": {"Err": other}}:
                        return "Sudo", str(other)
        return None

    def _module_error_name(self, module_index: int, error: Any) -> str:
        error_index = bytes(ScaleDecoder.to_bytes_safe(error))[0] if isinstance(error, str) else int(error)
        try:
            return self._substrate.metadata.get_module_error(
                module_index=module_index, error_index=error_index
            ).name
        except Exception as e:
            logger.debug(f"{self.name}: could not resolve module error: {e}")
            return f"Module{module_index}Error{error_index}"
