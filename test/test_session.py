"""Tests for RelaySession wiring and lifecycle against in-memory chains."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from spin_relayer.errors import ConnectionLost, RelayerError
from spin_relayer.models import EventKind
from spin_relayer.session import (
    STRATEGY_FINALIZED_HEADS,
    STRATEGY_JUSTIFICATIONS,
    RelaySession,
)

from conftest import BOB, CHARLIE, block_hash, encode_justification, make_proof, snapshot


@pytest.fixture(autouse=True)
def fast_health_checks(monkeypatch):
    monkeypatch.setattr(RelaySession, "HEALTH_CHECK_INTERVAL", 0.01)


@pytest.fixture
def session(fastchain, parachain, config):
    return RelaySession(fastchain, parachain, config)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def start(session, fastchain, kind=EventKind.FINALITY_JUSTIFICATIONS) -> asyncio.Task:
    task = asyncio.create_task(session.run())
    await wait_until(lambda: kind in fastchain.streams)
    return task


async def stop(session, task) -> None:
    session.stop()
    await asyncio.wait_for(task, timeout=2.0)


class TestRelaySessionStartup:
    """Test suite for session startup."""

    @pytest.mark.asyncio
    async def test_initial_sync_before_streams(self, session, fastchain, parachain, tip_set):
        task = await start(session, fastchain)

        assert parachain.record == tip_set
        assert session.strategy == STRATEGY_JUSTIFICATIONS
        assert EventKind.AUTHORITY_SET_ID_CHANGES in fastchain.streams

        await stop(session, task)

    @pytest.mark.asyncio
    async def test_falls_back_to_finalized_heads(self, session, fastchain, parachain):
        """Without the justification RPC, proofs are pulled for finalized heads."""
        fastchain.has_justification_stream = False
        fastchain.proofs[12] = make_proof(12)
        task = await start(session, fastchain, EventKind.FINALIZED_HEADS)

        assert session.strategy == STRATEGY_FINALIZED_HEADS
        fastchain.streams[EventKind.FINALIZED_HEADS].push(
            {"number": "0xc", "parentHash": block_hash(11)}
        )
        await wait_until(lambda: fastchain.anchored == [12])

        assert parachain.submitted == [(12, 5)]
        await stop(session, task)

    @pytest.mark.asyncio
    async def test_head_without_proof_is_skipped(self, session, fastchain, parachain):
        fastchain.has_justification_stream = False
        task = await start(session, fastchain, EventKind.FINALIZED_HEADS)

        fastchain.streams[EventKind.FINALIZED_HEADS].push({"number": 7, "parentHash": block_hash(6)})
        await wait_until(lambda: session.proof_runner.executed == 1)

        assert parachain.submitted == []
        await stop(session, task)


class TestRelaySessionForwarding:
    """Test suite for event handling while running."""

    @pytest.mark.asyncio
    async def test_burst_before_forwarding_starts_forwards_only_latest(
        self, session, fastchain, parachain
    ):
        """Proofs 10, 11 and 12 delivered together anchor only block 12."""
        task = await start(session, fastchain)
        justifications = fastchain.streams[EventKind.FINALITY_JUSTIFICATIONS]

        for number in (10, 11, 12):
            justifications.push(encode_justification(number))
        await wait_until(lambda: fastchain.anchored == [12])
        await stop(session, task)

        assert parachain.submitted == [(12, 5)]
        assert fastchain.anchored == [12]
        assert session.get_stats()['superseded'] == 2

    @pytest.mark.asyncio
    async def test_burst_forwards_first_and_latest(self, session, fastchain, parachain):
        """Proofs 11 and 12 arriving while 10 is in flight collapse into 12."""
        parachain.submit_gate = asyncio.Event()
        task = await start(session, fastchain)
        justifications = fastchain.streams[EventKind.FINALITY_JUSTIFICATIONS]

        justifications.push(encode_justification(10))
        await wait_until(parachain.submit_started.is_set)
        justifications.push(encode_justification(11))
        justifications.push("0x" + encode_justification(12).hex())
        await wait_until(lambda: session.proof_runner.superseded == 1)
        parachain.submit_gate.set()
        await wait_until(lambda: len(fastchain.anchored) == 2)

        assert parachain.submitted == [(10, 5), (12, 5)]
        assert fastchain.anchored == [10, 12]
        assert session.get_stats()['superseded'] == 1
        await stop(session, task)

    @pytest.mark.asyncio
    async def test_malformed_justification_is_skipped(self, session, fastchain):
        task = await start(session, fastchain)
        justifications = fastchain.streams[EventKind.FINALITY_JUSTIFICATIONS]

        justifications.push(b"\x01\x02")
        justifications.push(encode_justification(12))
        await wait_until(lambda: fastchain.anchored == [12])

        assert session.get_stats()['invalid'] == 1
        await stop(session, task)

    @pytest.mark.asyncio
    async def test_set_id_change_updates_parachain(self, session, fastchain, parachain):
        task = await start(session, fastchain)
        rotated = snapshot(6, (BOB, 1), (CHARLIE, 1))
        fastchain.tip = rotated

        fastchain.streams[EventKind.AUTHORITY_SET_ID_CHANGES].push(6)
        await wait_until(lambda: parachain.record == rotated)

        assert session.cache.current == rotated
        await stop(session, task)

    @pytest.mark.asyncio
    async def test_stats_include_queues_runners_and_tracker(self, session, fastchain):
        task = await start(session, fastchain)

        fastchain.streams[EventKind.FINALITY_JUSTIFICATIONS].push(encode_justification(12))
        await wait_until(lambda: fastchain.anchored == [12])
        await stop(session, task)
        stats = session.get_stats()

        assert stats['queues']['fastchain'] == {'pending': 0, 'completed': 1, 'failed': 0}
        assert stats['runners']['proof']['executed'] == 1
        assert stats['tracker']['updates_submitted'] == 1
        assert stats['cache']['current_set_id'] == 5


class TestRelaySessionShutdown:
    """Test suite for graceful stop and fatal errors."""

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_work_before_closing(
        self, session, fastchain, parachain, call_log
    ):
        """A proof in flight at stop time is submitted and anchored before close."""
        parachain.submit_gate = asyncio.Event()
        task = await start(session, fastchain)

        fastchain.streams[EventKind.FINALITY_JUSTIFICATIONS].push(encode_justification(12))
        await wait_until(parachain.submit_started.is_set)
        session.stop()
        await asyncio.sleep(0.05)

        assert not task.done()
        assert not fastchain.closed and not parachain.closed

        parachain.submit_gate.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert fastchain.anchored == [12]
        assert ("fastchain", "submit-after-close") not in call_log
        assert ("parachain", "submit-after-close") not in call_log
        assert call_log[-2:] == [("fastchain", "close"), ("parachain", "close")]
        assert call_log.index(("fastchain", "note_anchor_verified", 12)) < call_log.index(
            ("fastchain", "close")
        )

    @pytest.mark.asyncio
    async def test_events_after_stop_are_ignored(self, session, fastchain, parachain):
        task = await start(session, fastchain)
        justifications = fastchain.streams[EventKind.FINALITY_JUSTIFICATIONS]
        await stop(session, task)

        justifications.push(encode_justification(12))
        await asyncio.sleep(0.02)

        assert parachain.submitted == []
        assert justifications.closed

    @pytest.mark.asyncio
    async def test_stream_end_fails_session(self, session, fastchain):
        task = await start(session, fastchain)

        fastchain.streams[EventKind.FINALITY_JUSTIFICATIONS].finish()

        with pytest.raises(RelayerError, match="ended unexpectedly"):
            await asyncio.wait_for(task, timeout=2.0)
        assert fastchain.closed

    @pytest.mark.asyncio
    async def test_disconnect_fails_session(self, session, fastchain, parachain):
        task = await start(session, fastchain)

        parachain.disconnected.set()

        with pytest.raises(ConnectionLost, match="parachain"):
            await asyncio.wait_for(task, timeout=2.0)
        assert parachain.closed

    @pytest.mark.asyncio
    async def test_connection_loss_in_task_fails_session(self, session, fastchain, parachain):
        parachain.submit_finality_proof = AsyncMock(side_effect=ConnectionLost("parachain gone"))
        task = await start(session, fastchain)

        fastchain.streams[EventKind.FINALITY_JUSTIFICATIONS].push(encode_justification(12))

        with pytest.raises(ConnectionLost, match="parachain gone"):
            await asyncio.wait_for(task, timeout=2.0)
        assert fastchain.anchored == []
