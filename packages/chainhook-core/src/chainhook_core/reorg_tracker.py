#!/usr/bin/env python3
"""Blockchain reorganization tracking.

This module keeps a bounded history of observed reorgs and answers whether a
transaction or block is still valid. ``ReorgAwareEventProcessor`` re-checks
that validity at processing time, since an event queued before a reorg was
observed may only reach processing afterwards.
"""

import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, ClassVar

from .models import (
    ChainEvent,
    ProcessResult,
    RecoveryActions,
    ReorgEvent,
    ReorgState,
    now_ms,
)
from .utils.callables import call_handler

# Get logger for this module
logger = logging.getLogger(__name__)

AffectedTransactionsCallback = Callable[[list[str]], Awaitable[None] | None]
EventProcessorFunc = Callable[[ChainEvent], Any]

TX_AFFECTED_REASON = "Transaction affected by reorganization"
BLOCK_REMOVED_REASON = "Block removed due to reorganization"

HOUR_MS = 60 * 60 * 1000


class ReorgTracker:
    """Bounded ledger of observed reorganizations.

    History keeps the ``MAX_HISTORY`` most recent reorgs; older entries are
    evicted regardless of their block heights. Mutated only by
    ``handle_reorg`` and ``reset``.
    """

    MAX_HISTORY: ClassVar[int] = 10

    def __init__(self, max_reorg_depth: int = 100) -> None:
        """Initialize the tracker.

        Args:
            max_reorg_depth: Default bound used by ``is_reorg_within_depth``
        """
        self.max_reorg_depth = max_reorg_depth
        self._history: deque[ReorgState] = deque(maxlen=self.MAX_HISTORY)
        self._affected_callbacks: list[AffectedTransactionsCallback] = []

    async def handle_reorg(self, event: ReorgEvent) -> ReorgState:
        """Record a reorganization and notify affected-transaction callbacks.

        Args:
            event: The reorg event reported by the indexer

        Returns:
            The recorded ReorgState
        """
        affected = list(dict.fromkeys(event.affected_transactions))
        state = ReorgState(
            reorg_height=event.block_height,
            common_ancestor_height=event.common_ancestor_height,
            affected_transactions=frozenset(affected),
            removed_blocks=frozenset(event.removed_block_hashes),
            added_blocks=frozenset(event.added_block_hashes),
            timestamp=now_ms(),
        )

        if len(self._history) == self._history.maxlen:
            logger.debug(f"Evicting oldest reorg {self._history[0]}")
        self._history.append(state)

        logger.info(f"Reorg recorded: {state} depth={state.depth}")

        for callback in list(self._affected_callbacks):
            try:
                await call_handler(callback, list(affected))
            except Exception as e:
                logger.error(f"Error in reorg callback: {e}", exc_info=True)

        return state

    def on_affected_transactions(self, callback: AffectedTransactionsCallback) -> None:
        """Register a callback receiving the affected transactions of each reorg."""
        self._affected_callbacks.append(callback)

    def is_transaction_affected(self, tx_hash: str) -> bool:
        return any(tx_hash in state.affected_transactions for state in self._history)

    def is_block_removed(self, block_hash: str) -> bool:
        return any(block_hash in state.removed_blocks for state in self._history)

    def get_current_reorg_depth(self) -> int:
        """Depth of the most recent reorg, 0 when none has been seen."""
        if not self._history:
            return 0
        return self._history[-1].depth

    def count_recent_reorgs(self, window_ms: int = HOUR_MS) -> int:
        """Number of retained reorgs observed within the last ``window_ms``."""
        cutoff = now_ms() - window_ms
        return sum(1 for state in self._history if state.timestamp >= cutoff)

    def is_reorg_within_depth(self, max_depth: int | None = None) -> bool:
        if max_depth is None:
            max_depth = self.max_reorg_depth
        return self.get_current_reorg_depth() <= max_depth

    def get_affected_transactions_since(self, block_height: int) -> list[str]:
        """Transactions affected by reorgs observed at or above ``block_height``."""
        affected: dict[str, None] = {}
        for state in self._history:
            if state.reorg_height >= block_height:
                affected.update(dict.fromkeys(sorted(state.affected_transactions)))
        return list(affected)

    def get_recovery_actions(self) -> RecoveryActions:
        """List the blocks and transactions that need to be reprocessed.

        Returns:
            De-duplicated union over the retained history
        """
        blocks: dict[str, None] = {}
        transactions: dict[str, None] = {}

        for state in self._history:
            blocks.update(dict.fromkeys(sorted(state.removed_blocks)))
            transactions.update(dict.fromkeys(sorted(state.affected_transactions)))

        return RecoveryActions(
            reprocess_blocks=tuple(blocks),
            reprocess_transactions=tuple(transactions),
            verify_data_integrity=bool(blocks) or bool(transactions),
        )

    def events_occurred_before_reorg(self, events: Iterable[ChainEvent]) -> bool:
        """Check that none of the events is invalidated by the retained reorgs.

        Events with a transaction hash must not be affected; events without
        one must sit below the oldest retained reorg height.
        """
        if not self._history:
            return True

        earliest = self._history[0]
        for event in events:
            if event.tx_hash is not None:
                if self.is_transaction_affected(event.tx_hash):
                    return False
            elif event.block_height >= earliest.reorg_height:
                return False
        return True

    def get_history(self) -> list[ReorgState]:
        """Retained reorgs, oldest first."""
        return list(self._history)

    def reset(self) -> None:
        """Forget every recorded reorg (after a full resynchronization)."""
        self._history.clear()
        logger.info("Reorg history reset")


class ReorgAwareEventProcessor:
    """Runs a processing function only for events not invalidated by a reorg."""

    def __init__(self, tracker: ReorgTracker) -> None:
        self.tracker = tracker

    async def process_event(
        self,
        event: ChainEvent,
        processor: EventProcessorFunc,
    ) -> ProcessResult:
        """Process an event unless a recorded reorg invalidated it.

        Never raises: processor errors are reported through ``reason``.

        Args:
            event: The event to process
            processor: Sync or async callable receiving the event

        Returns:
            ProcessResult telling whether the processor ran successfully
        """
        if event.tx_hash is not None and self.tracker.is_transaction_affected(event.tx_hash):
            logger.info(f"Skipping event for tx {event.tx_hash[:10]}...: {TX_AFFECTED_REASON}")
            return ProcessResult(processed=False, reason=TX_AFFECTED_REASON)

        if self.tracker.is_block_removed(event.block_hash):
            logger.info(f"Skipping event in block {event.block_hash[:10]}...: {BLOCK_REMOVED_REASON}")
            return ProcessResult(processed=False, reason=BLOCK_REMOVED_REASON)

        try:
            await call_handler(processor, event)
            return ProcessResult(processed=True)
        except Exception as e:
            logger.error(f"Error processing event {event.event_id}: {e}", exc_info=True)
            return ProcessResult(processed=False, reason=str(e))

    async def process_events(
        self,
        events: Iterable[ChainEvent],
        processor: EventProcessorFunc,
    ) -> dict[str, ProcessResult]:
        """Process events one by one, keyed by tx hash (else block hash)."""
        results: dict[str, ProcessResult] = {}

        for event in events:
            results[event.event_id] = await self.process_event(event, processor)

        return results
