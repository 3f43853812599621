"""Shared fixtures and in-memory chain fakes for the relayer tests."""

import asyncio

import pytest

from spin_relayer.config import (
    ChainEndpointConfig,
    ConnectionConfig,
    RelayerConfig,
    TransactionConfig,
)
from spin_relayer.errors import ConnectionLost, DispatchError
from spin_relayer.event_processor import EventProcessor
from spin_relayer.models import (
    AuthorityEntry,
    AuthoritySetSnapshot,
    EventKind,
    FinalityProof,
)
from spin_relayer.utils.chain_client import Subscription

ALICE = "0x" + "aa" * 32
BOB = "0x" + "bb" * 32
CHARLIE = "0x" + "cc" * 32


def block_hash(number: int) -> str:
    """Deterministic fake block hash for a block number."""
    return "0x" + number.to_bytes(32, "big").hex()


def snapshot(set_id: int, *entries: tuple[str, int]) -> AuthoritySetSnapshot:
    return AuthoritySetSnapshot(set_id, tuple(AuthorityEntry(i, w) for i, w in entries))


def encode_justification(
    target_number: int,
    target_hash: str | None = None,
    round_number: int = 1,
    block_number_bytes: int = 8,
) -> bytes:
    """SCALE-encode a justification with no precommits and no ancestry headers."""
    target_hash = target_hash or block_hash(target_number)
    return (
        round_number.to_bytes(8, "little")
        + bytes.fromhex(target_hash[2:])
        + target_number.to_bytes(block_number_bytes, "little")
        + b"\x00"  # precommits: empty vec
        + b"\x00"  # votes ancestries: empty vec
    )


def make_proof(number: int) -> FinalityProof:
    return FinalityProof(number, block_hash(number), encode_justification(number))


class FakeFastchain:
    """In-memory fastchain view recording every call in a shared log."""

    def __init__(self, log: list, tip: AuthoritySetSnapshot):
        self.name = "fastchain"
        self.log = log
        self.disconnected = asyncio.Event()
        self.processor = EventProcessor()
        self.tip = tip
        self.sets_at: dict[str, AuthoritySetSnapshot] = {}
        self.parents: dict[str, str] = {}
        self.proofs: dict[int, FinalityProof] = {}
        self.has_justification_stream = True
        self.streams: dict[EventKind, Subscription] = {}
        self.anchored: list[int] = []
        self.connect_failures = 0
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.log.append(("fastchain", "connect"))
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionLost("fastchain unreachable")
        self.connected = True

    async def close(self) -> None:
        self.log.append(("fastchain", "close"))
        self.closed = True

    def _snapshot_at(self, block_hash: str | None) -> AuthoritySetSnapshot:
        return self.sets_at.get(block_hash, self.tip) if block_hash else self.tip

    async def set_id_at(self, block_hash: str | None = None) -> int:
        return self._snapshot_at(block_hash).set_id

    async def authorities_at(self, block_hash: str | None = None) -> list[AuthorityEntry]:
        return list(self._snapshot_at(block_hash).entries)

    async def authority_set_at(self, block_hash: str | None = None) -> AuthoritySetSnapshot:
        return self._snapshot_at(block_hash)

    async def parent_hash(self, block_hash: str) -> str:
        return self.parents[block_hash]

    async def supports_justification_stream(self) -> bool:
        return self.has_justification_stream

    async def _subscribe(self, kind: EventKind) -> Subscription:
        stream = Subscription(f"fastchain:{kind.value}")
        self.streams[kind] = stream
        return stream

    async def subscribe_justifications(self) -> Subscription:
        return await self._subscribe(EventKind.FINALITY_JUSTIFICATIONS)

    async def subscribe_finalized_heads(self) -> Subscription:
        return await self._subscribe(EventKind.FINALIZED_HEADS)

    async def subscribe_set_id_changes(self) -> Subscription:
        return await self._subscribe(EventKind.AUTHORITY_SET_ID_CHANGES)

    async def prove_finality(self, block_number: int) -> FinalityProof | None:
        return self.proofs.get(block_number)

    async def note_anchor_verified(self, up_to: int) -> str:
        if self.closed:
            self.log.append(("fastchain", "submit-after-close"))
        self.log.append(("fastchain", "note_anchor_verified", up_to))
        self.anchored.append(up_to)
        return block_hash(10_000 + up_to)


class FakeParachain:
    """In-memory parachain view with a stored authority set record."""

    def __init__(self, log: list, record: AuthoritySetSnapshot | None = None):
        self.name = "parachain"
        self.log = log
        self.disconnected = asyncio.Event()
        self.record = record
        self.authority_updates: list[AuthoritySetSnapshot] = []
        self.submitted: list[tuple[int, int]] = []
        self.mismatches_remaining = 0
        self.submit_gate: asyncio.Event | None = None
        self.submit_started = asyncio.Event()
        self.closed = False

    async def connect(self) -> None:
        self.log.append(("parachain", "connect"))

    async def close(self) -> None:
        self.log.append(("parachain", "close"))
        self.closed = True

    async def current_authority_set(self) -> AuthoritySetSnapshot | None:
        return self.record

    async def set_authority_set(self, snapshot: AuthoritySetSnapshot) -> str:
        if self.closed:
            self.log.append(("parachain", "submit-after-close"))
        self.log.append(("parachain", "set_authority_set", snapshot.set_id))
        self.authority_updates.append(snapshot)
        self.record = snapshot
        return block_hash(20_000 + len(self.authority_updates))

    async def submit_finality_proof(self, set_id: int, proof: FinalityProof) -> str:
        self.submit_started.set()
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.closed:
            self.log.append(("parachain", "submit-after-close"))
        self.log.append(("parachain", "submit_finality_proof", proof.target_number, set_id))
        if self.mismatches_remaining > 0:
            self.mismatches_remaining -= 1
            raise DispatchError("submit_finality_proof", "SpinPolkadot", "AuthoritySetMismatch")
        self.submitted.append((proof.target_number, set_id))
        return block_hash(30_000 + proof.target_number)


@pytest.fixture
def call_log():
    return []


@pytest.fixture
def tip_set():
    return snapshot(5, (ALICE, 1), (BOB, 1))


@pytest.fixture
def fastchain(call_log, tip_set):
    return FakeFastchain(call_log, tip_set)


@pytest.fixture
def parachain(call_log):
    return FakeParachain(call_log)


@pytest.fixture
def config():
    """Relayer configuration with all delays at zero."""
    return RelayerConfig(
        fastchain=ChainEndpointConfig("fastchain", "ws://127.0.0.1:11144", "//Alice"),
        parachain=ChainEndpointConfig("parachain", "ws://127.0.0.1:9988", "//Bob"),
        transactions=TransactionConfig(
            timeout_ms=1_000,
            retry_max_attempts=3,
            retry_base_delay_ms=0,
            retry_max_delay_ms=0,
            retry_jitter=0.0,
        ),
        connection=ConnectionConfig(
            connect_max_attempts=2,
            connect_base_delay_ms=0,
            connect_max_delay_ms=0,
            restart_delay_ms=0,
            restart_max_delay_ms=0,
        ),
    )
