"""Unit tests for AuthorityTracker."""

from unittest.mock import AsyncMock

import pytest

from spin_relayer.authority_tracker import AuthorityTracker
from spin_relayer.errors import ConnectionLost, RpcError
from spin_relayer.retry import RetryPolicy
from spin_relayer.task_queues import SerialQueue
from spin_relayer.utils.state_manager import RelayerCache

from conftest import ALICE, BOB, CHARLIE, snapshot


@pytest.fixture
def tracker(fastchain, parachain):
    return AuthorityTracker(
        fastchain=fastchain,
        parachain=parachain,
        cache=RelayerCache(),
        parachain_queue=SerialQueue("parachain-tx"),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0, max_delay=0),
    )


class TestEnsureAuthoritySet:
    """Test suite for ensure_authority_set."""

    @pytest.mark.asyncio
    async def test_second_call_is_a_no_op(self, tracker, parachain, tip_set):
        """Calling twice with the same set submits at most once."""
        assert await tracker.ensure_authority_set(tip_set) is True
        assert await tracker.ensure_authority_set(tip_set) is False

        assert parachain.authority_updates == [tip_set]
        assert tracker.get_stats()['updates_skipped'] == 1

    @pytest.mark.asyncio
    async def test_reversed_order_on_parachain_issues_no_transaction(self, tracker, parachain):
        """Parachain holding the same set in reverse order counts as in sync."""
        parachain.record = snapshot(5, (BOB, 1), (ALICE, 1))

        changed = await tracker.ensure_authority_set(snapshot(5, (ALICE, 1), (BOB, 1)))

        assert changed is False
        assert parachain.authority_updates == []

    @pytest.mark.asyncio
    async def test_set_id_change_triggers_update(self, tracker, parachain):
        parachain.record = snapshot(5, (ALICE, 1), (BOB, 1))

        assert await tracker.ensure_authority_set(snapshot(6, (ALICE, 1), (BOB, 1)))
        assert parachain.record.set_id == 6

    @pytest.mark.asyncio
    async def test_entry_change_triggers_update(self, tracker, parachain):
        parachain.record = snapshot(5, (ALICE, 1), (BOB, 1))

        assert await tracker.ensure_authority_set(snapshot(5, (ALICE, 1), (CHARLIE, 1)))
        assert len(parachain.authority_updates) == 1

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, tracker, parachain, tip_set):
        parachain.set_authority_set = AsyncMock(
            side_effect=[RpcError("WebSocket is not connected"), "0xblock"]
        )

        assert await tracker.ensure_authority_set(tip_set)
        assert parachain.set_authority_set.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_loss_is_not_retried(self, tracker, parachain, tip_set):
        parachain.set_authority_set = AsyncMock(side_effect=ConnectionLost("parachain gone"))

        with pytest.raises(ConnectionLost):
            await tracker.ensure_authority_set(tip_set)
        assert parachain.set_authority_set.await_count == 1


class TestAuthorityTracking:
    """Test suite for initial sync and set id notifications."""

    @pytest.mark.asyncio
    async def test_initial_sync_mirrors_tip_set(self, tracker, parachain, tip_set):
        result = await tracker.initial_sync()

        assert result == tip_set
        assert parachain.record == tip_set
        assert tracker.cache.current == tip_set
        assert tracker.cache.get(5) == tip_set

    @pytest.mark.asyncio
    async def test_initial_sync_failure_is_not_fatal(self, tracker, parachain):
        parachain.current_authority_set = AsyncMock(side_effect=RpcError("boom"))

        assert await tracker.initial_sync() is None
        assert tracker.cache.current is None

    @pytest.mark.asyncio
    async def test_initial_sync_connection_loss_propagates(self, tracker, fastchain):
        fastchain.authority_set_at = AsyncMock(side_effect=ConnectionLost("fastchain gone"))

        with pytest.raises(ConnectionLost):
            await tracker.initial_sync()

    @pytest.mark.asyncio
    async def test_unchanged_notification_is_a_no_op(self, tracker, parachain, tip_set):
        await tracker.initial_sync()
        parachain.authority_updates.clear()
        parachain.current_authority_set = AsyncMock(wraps=parachain.current_authority_set)

        assert await tracker.handle_set_id_change(5) is False
        parachain.current_authority_set.assert_not_awaited()
        assert parachain.authority_updates == []

    @pytest.mark.asyncio
    async def test_rotation_synchronizes_new_set(self, tracker, fastchain, parachain):
        await tracker.initial_sync()
        fastchain.tip = snapshot(6, (BOB, 1), (CHARLIE, 1))

        assert await tracker.handle_set_id_change(6) is True

        assert parachain.record == snapshot(6, (BOB, 1), (CHARLIE, 1))
        assert tracker.cache.current.set_id == 6
        assert tracker.cache.get(5) is not None

    @pytest.mark.asyncio
    async def test_failed_sync_leaves_current_untouched(self, tracker, fastchain, parachain, tip_set):
        await tracker.initial_sync()
        fastchain.tip = snapshot(6, (BOB, 1))
        parachain.set_authority_set = AsyncMock(side_effect=RpcError("bad origin"))

        assert await tracker.handle_set_id_change(6) is False
        assert tracker.cache.current == tip_set

    @pytest.mark.asyncio
    async def test_set_id_change_connection_loss_propagates(self, tracker, fastchain):
        fastchain.authorities_at = AsyncMock(side_effect=ConnectionLost("gone"))

        with pytest.raises(ConnectionLost):
            await tracker.handle_set_id_change(6)
