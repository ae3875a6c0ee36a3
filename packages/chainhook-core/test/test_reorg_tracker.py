#!/usr/bin/env python3
"""Tests for reorg tracking and reorg-aware event processing."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chainhook_core.models import ReorgEvent, TransferEvent, now_ms
from chainhook_core.reorg_tracker import (
    BLOCK_REMOVED_REASON,
    HOUR_MS,
    TX_AFFECTED_REASON,
    ReorgAwareEventProcessor,
    ReorgTracker,
)


def make_reorg(height, ancestor, removed=(), added=(), affected=()):
    return ReorgEvent(
        timestamp=1700000000000,
        block_height=height,
        block_hash=f"0xtip{height}",
        reorg_depth=height - ancestor,
        common_ancestor_height=ancestor,
        removed_block_hashes=tuple(removed),
        added_block_hashes=tuple(added),
        affected_transactions=tuple(affected),
    )


def make_transfer(tx_hash, block_hash="0xgood", block_height=100):
    return TransferEvent(
        timestamp=1700000000000,
        block_height=block_height,
        block_hash=block_hash,
        tx_hash=tx_hash,
        sender="SP1",
        recipient="SP2",
        amount=1,
    )


@pytest.fixture
def tracker():
    """Create a fresh tracker for each test."""
    return ReorgTracker()


@pytest.fixture
def processor(tracker):
    """Create a processor bound to the tracker fixture."""
    return ReorgAwareEventProcessor(tracker)


class TestReorgTracker:
    """Tests for the reorg ledger."""

    def test_initial_state(self, tracker):
        assert tracker.get_current_reorg_depth() == 0
        assert tracker.is_reorg_within_depth() is True
        assert tracker.is_transaction_affected("0xany") is False
        assert tracker.is_block_removed("0xany") is False
        assert tracker.get_history() == []

    @pytest.mark.asyncio
    async def test_handle_reorg_records_state(self, tracker):
        state = await tracker.handle_reorg(
            make_reorg(100010, 100005, removed=["0xold"], added=["0xnew"], affected=["0xtx1", "0xtx1", "0xtx2"])
        )

        assert state.reorg_height == 100010
        assert state.common_ancestor_height == 100005
        assert state.depth == 5
        assert state.affected_transactions == frozenset({"0xtx1", "0xtx2"})
        assert state.removed_blocks == frozenset({"0xold"})
        assert state.added_blocks == frozenset({"0xnew"})
        assert tracker.get_current_reorg_depth() == 5
        assert tracker.is_transaction_affected("0xtx1") is True
        assert tracker.is_block_removed("0xold") is True
        assert tracker.is_block_removed("0xnew") is False

    @pytest.mark.asyncio
    async def test_depth_uses_latest_reorg(self, tracker):
        await tracker.handle_reorg(make_reorg(200, 150))
        await tracker.handle_reorg(make_reorg(300, 297))

        assert tracker.get_current_reorg_depth() == 3

    @pytest.mark.asyncio
    async def test_within_depth(self, tracker):
        await tracker.handle_reorg(make_reorg(100010, 100005))

        assert tracker.is_reorg_within_depth(5) is True
        assert tracker.is_reorg_within_depth(4) is False

        shallow = ReorgTracker(max_reorg_depth=3)
        await shallow.handle_reorg(make_reorg(100010, 100005))
        assert shallow.is_reorg_within_depth() is False

    @pytest.mark.asyncio
    async def test_history_evicts_oldest_after_ten(self, tracker):
        for i in range(11):
            await tracker.handle_reorg(make_reorg(1000 + i, 999 + i, affected=[f"0xtx{i}"]))

        history = tracker.get_history()
        assert len(history) == ReorgTracker.MAX_HISTORY
        assert history[0].reorg_height == 1001
        assert tracker.is_transaction_affected("0xtx0") is False
        assert tracker.is_transaction_affected("0xtx10") is True

    @pytest.mark.asyncio
    async def test_callbacks_receive_affected_transactions(self, tracker):
        sync_callback = MagicMock()
        async_callback = AsyncMock()
        tracker.on_affected_transactions(sync_callback)
        tracker.on_affected_transactions(async_callback)

        await tracker.handle_reorg(make_reorg(10, 8, affected=["0xb", "0xa", "0xb"]))

        sync_callback.assert_called_once_with(["0xb", "0xa"])
        async_callback.assert_awaited_once_with(["0xb", "0xa"])

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_abort(self, tracker, caplog):
        after = MagicMock()
        tracker.on_affected_transactions(MagicMock(side_effect=RuntimeError("callback broke")))
        tracker.on_affected_transactions(after)

        state = await tracker.handle_reorg(make_reorg(10, 8, affected=["0xa"]))

        after.assert_called_once_with(["0xa"])
        assert tracker.get_history() == [state]
        assert "Error in reorg callback: callback broke" in caplog.text

    @pytest.mark.asyncio
    async def test_affected_transactions_since(self, tracker):
        await tracker.handle_reorg(make_reorg(100, 95, affected=["0xa"]))
        await tracker.handle_reorg(make_reorg(200, 195, affected=["0xc", "0xb"]))
        await tracker.handle_reorg(make_reorg(300, 295, affected=["0xb", "0xd"]))

        assert tracker.get_affected_transactions_since(150) == ["0xb", "0xc", "0xd"]
        assert tracker.get_affected_transactions_since(200) == ["0xb", "0xc", "0xd"]
        assert tracker.get_affected_transactions_since(301) == []
        assert tracker.get_affected_transactions_since(0) == ["0xa", "0xb", "0xc", "0xd"]

    @pytest.mark.asyncio
    async def test_recovery_actions(self, tracker):
        assert tracker.get_recovery_actions().verify_data_integrity is False

        await tracker.handle_reorg(make_reorg(100, 95, removed=["0xb2", "0xb1"], affected=["0xt1"]))
        await tracker.handle_reorg(make_reorg(200, 195, removed=["0xb1", "0xb3"], affected=["0xt1", "0xt2"]))

        recovery = tracker.get_recovery_actions()

        assert recovery.reprocess_blocks == ("0xb1", "0xb2", "0xb3")
        assert recovery.reprocess_transactions == ("0xt1", "0xt2")
        assert recovery.verify_data_integrity is True

    @pytest.mark.asyncio
    async def test_events_occurred_before_reorg(self, tracker):
        assert tracker.events_occurred_before_reorg([make_transfer("0xa")]) is True

        await tracker.handle_reorg(make_reorg(100, 95, affected=["0xbad"]))
        block_event = make_reorg(90, 85)

        assert tracker.events_occurred_before_reorg([make_transfer("0xok"), block_event]) is True
        assert tracker.events_occurred_before_reorg([make_transfer("0xok"), make_transfer("0xbad")]) is False
        assert tracker.events_occurred_before_reorg([make_reorg(100, 99)]) is False

    @pytest.mark.asyncio
    async def test_count_recent_reorgs(self, tracker):
        two_hours_ago = now_ms() - 2 * HOUR_MS
        with patch("chainhook_core.reorg_tracker.now_ms", return_value=two_hours_ago):
            await tracker.handle_reorg(make_reorg(100, 99))
            await tracker.handle_reorg(make_reorg(101, 100))
        await tracker.handle_reorg(make_reorg(102, 101))

        assert tracker.count_recent_reorgs() == 1
        assert tracker.count_recent_reorgs(3 * HOUR_MS) == 3

    @pytest.mark.asyncio
    async def test_reset(self, tracker):
        await tracker.handle_reorg(make_reorg(100, 95, removed=["0xb"], affected=["0xt"]))

        tracker.reset()

        assert tracker.get_history() == []
        assert tracker.get_current_reorg_depth() == 0
        assert tracker.is_transaction_affected("0xt") is False
        assert tracker.get_recovery_actions().verify_data_integrity is False


class TestReorgAwareEventProcessor:
    """Tests for reorg-aware processing."""

    @pytest.mark.asyncio
    async def test_processes_valid_event(self, processor):
        spy = AsyncMock()
        event = make_transfer("0xfine")

        result = await processor.process_event(event, spy)

        spy.assert_awaited_once_with(event)
        assert result.processed is True
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_rejects_affected_transaction(self, tracker, processor):
        await tracker.handle_reorg(make_reorg(100, 95, affected=["0xbad"]))
        spy = MagicMock()

        result = await processor.process_event(make_transfer("0xbad"), spy)

        assert spy.call_count == 0
        assert result.processed is False
        assert result.reason == TX_AFFECTED_REASON

    @pytest.mark.asyncio
    async def test_rejects_event_in_removed_block(self, tracker, processor):
        await tracker.handle_reorg(make_reorg(100, 95, removed=["0xorphan"]))
        spy = MagicMock()

        result = await processor.process_event(make_transfer("0xfresh", block_hash="0xorphan"), spy)

        assert spy.call_count == 0
        assert result.reason == BLOCK_REMOVED_REASON

    @pytest.mark.asyncio
    async def test_transaction_check_precedes_block_check(self, tracker, processor):
        await tracker.handle_reorg(make_reorg(100, 95, removed=["0xorphan"], affected=["0xbad"]))

        result = await processor.process_event(make_transfer("0xbad", block_hash="0xorphan"), MagicMock())

        assert result.reason == TX_AFFECTED_REASON

    @pytest.mark.asyncio
    async def test_processor_error_reported(self, processor):
        def failing(event):
            raise ValueError("database unavailable")

        result = await processor.process_event(make_transfer("0xa"), failing)

        assert result.processed is False
        assert result.reason == "database unavailable"

    @pytest.mark.asyncio
    async def test_process_events_keyed_by_event_id(self, tracker, processor):
        await tracker.handle_reorg(make_reorg(100, 95, affected=["0xbad"]))
        block_level = make_reorg(50, 49)
        events = [make_transfer("0xgood1"), make_transfer("0xbad"), block_level]

        results = await processor.process_events(events, MagicMock(return_value=None))

        assert list(results) == ["0xgood1", "0xbad", "0xtip50"]
        assert results["0xgood1"].processed is True
        assert results["0xbad"].reason == TX_AFFECTED_REASON
        assert results["0xtip50"].processed is True
