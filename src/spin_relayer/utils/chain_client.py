"""
Chain client boundary for the spin relayer.

``ChainClient`` is the interface the relayer needs from a chain connection;
``Subscription`` turns callback-driven notification streams into async
iterators, so consumers can be written as ``async for event in stream``.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Callable, Generic, Protocol, TypeVar

from substrateinterface import Keypair

from ..models import BlockHeader, EventKind, SubmissionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Signal(Enum):
    ITEM = "item"
    ERROR = "error"
    END = "end"


class Subscription(Generic[T]):
    """
    Async iterator over the notifications of one subscription.

    Producers may live on another thread and use the ``*_threadsafe``
    variants, which hop onto the event loop before touching the queue.
    Iteration ends after ``finish`` or ``unsubscribe``, and raises the error
    passed to ``fail``.
    """

    def __init__(self, name: str, on_unsubscribe: Callable[[], Any] | None = None):
        """
        Initialize the subscription. Must be called on the event loop.

        Args:
            name: Name used in log messages
            on_unsubscribe: Best-effort callback that cancels the stream
                at its source
        """
        self.name = name
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[tuple[_Signal, Any]] = asyncio.Queue()
        self._on_unsubscribe = on_unsubscribe
        self._closed = False
        self._ended = False
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, item: T) -> None:
        if self._closed:
            return
        self._queue.put_nowait((_Signal.ITEM, item))

    def fail(self, error: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait((_Signal.ERROR, error))

    def finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait((_Signal.END, None))

    def push_threadsafe(self, item: T) -> None:
        self._call_threadsafe(self.push, item)

    def fail_threadsafe(self, error: BaseException) -> None:
        self._call_threadsafe(self.fail, error)

    def finish_threadsafe(self) -> None:
        self._call_threadsafe(self.finish)

    def _call_threadsafe(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Event loop already closed; the consumer is gone.
            logger.debug(f"{self.name}: dropping notification after loop shutdown")

    def unsubscribe(self) -> None:
        """Stop the stream. Synchronous and best-effort; never raises."""
        if self._on_unsubscribe is not None:
            callback, self._on_unsubscribe = self._on_unsubscribe, None
            try:
                callback()
            except Exception as e:
                logger.warning(f"{self.name}: unsubscribe failed: {e}")
        self.finish()

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        if self._ended:
            raise StopAsyncIteration
        signal, value = await self._queue.get()
        match signal:
            case _Signal.ITEM:
                self.delivered += 1
                return value
            case _Signal.ERROR:
                self._ended = True
                raise value
            case _:
                self._ended = True
                raise StopAsyncIteration


class ChainClient(Protocol):
    """Operations the relayer needs from one chain connection."""

    name: str
    disconnected: asyncio.Event

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def query(
        self,
        module: str,
        storage: str,
        params: list | None = None,
        block_hash: str | None = None,
    ) -> Any: ...

    async def runtime_call(
        self,
        api: str,
        method: str,
        params: list | None = None,
        block_hash: str | None = None,
    ) -> Any: ...

    async def rpc(self, method: str, params: list) -> Any: ...

    async def rpc_methods(self) -> list[str]: ...

    async def get_header(self, block_hash: str | None = None) -> BlockHeader: ...

    async def subscribe(self, kind: EventKind) -> Subscription[Any]: ...

    async def submit(
        self,
        module: str,
        function: str,
        params: dict,
        signer: Keypair,
        sudo: bool = False,
    ) -> Subscription[SubmissionStatus]: ...
