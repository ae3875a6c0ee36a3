#!/usr/bin/env python3
"""In-memory cache that stays consistent across chain reorganizations.

Every entry is indexed by the block height it was derived from and,
optionally, by its transaction. A reorg rolls the cache back to the common
ancestor and drops entries of the affected transactions, so readers never
see data from a discarded branch.
"""

import logging
from collections.abc import Iterable
from typing import Any

from .models import CacheEntry, CacheStats, ReorgEvent, now_ms
from .reorg_tracker import ReorgTracker

# Get logger for this module
logger = logging.getLogger(__name__)


class ReorgAwareCache:
    """Key/value cache indexed by block height and transaction."""

    def __init__(self, tracker: ReorgTracker | None = None) -> None:
        """Initialize the cache.

        Args:
            tracker: When given, entries of affected transactions are dropped
                as soon as the tracker records a reorg
        """
        self._entries: dict[str, CacheEntry] = {}
        self._block_index: dict[int, dict[str, None]] = {}
        self._tx_index: dict[str, dict[str, None]] = {}

        if tracker is not None:
            tracker.on_affected_transactions(self.invalidate_transactions)
            logger.info("ReorgAwareCache listening for affected transactions")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def set(self, key: str, value: Any, block_height: int, tx_hash: str | None = None) -> None:
        """Store a value derived from the given block (and transaction).

        Replacing a key moves it to the new block and transaction.
        """
        if key in self._entries:
            self._unindex(self._entries[key])

        entry = CacheEntry(
            key=key,
            value=value,
            block_height=block_height,
            timestamp=now_ms(),
            tx_hash=tx_hash,
        )
        self._entries[key] = entry
        self._block_index.setdefault(block_height, {})[key] = None
        if tx_hash is not None:
            self._tx_index.setdefault(tx_hash, {})[key] = None

        logger.debug(f"Cache set: {key} at block {block_height}")

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry is not None else default

    def get_entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def has(self, key: str) -> bool:
        return key in self._entries

    def delete(self, key: str) -> bool:
        """Remove a key; returns False when it was not cached."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False

        self._unindex(entry)
        logger.debug(f"Cache deleted: {key}")
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._block_index.clear()
        self._tx_index.clear()
        logger.info("Cache cleared")

    def rollback_to_block(self, block_height: int) -> int:
        """Drop every entry above ``block_height``.

        Returns:
            Number of entries removed
        """
        logger.info(f"Rolling back cache to block {block_height}")

        heights = [height for height in self._block_index if height > block_height]
        removed = 0
        for height in heights:
            for key in list(self._block_index.get(height, ())):
                removed += self.delete(key)

        logger.info(f"Cache rollback complete. Removed {removed} entries from {len(heights)} blocks")
        return removed

    def invalidate_transactions(self, tx_hashes: Iterable[str]) -> int:
        """Drop the entries derived from the given transactions.

        Returns:
            Number of entries removed
        """
        removed = 0
        for tx_hash in tx_hashes:
            for key in list(self._tx_index.get(tx_hash, ())):
                removed += self.delete(key)

        if removed:
            logger.debug(f"Invalidated {removed} cache entries for affected transactions")
        return removed

    def handle_reorg(self, event: ReorgEvent) -> int:
        """Roll back to the common ancestor and drop affected transactions.

        Returns:
            Number of entries removed
        """
        logger.warning(
            f"Handling reorg in cache: rollback to block {event.common_ancestor_height}, "
            f"{len(event.affected_transactions)} affected transactions"
        )
        removed = self.rollback_to_block(event.common_ancestor_height)
        removed += self.invalidate_transactions(event.affected_transactions)
        return removed

    def get_keys_for_block(self, block_height: int) -> list[str]:
        return list(self._block_index.get(block_height, ()))

    def get_stats(self) -> CacheStats:
        heights = sorted(self._block_index)
        return CacheStats(
            total_entries=len(self._entries),
            blocks_tracked=len(heights),
            oldest_block=heights[0] if heights else None,
            newest_block=heights[-1] if heights else None,
        )

    def _unindex(self, entry: CacheEntry) -> None:
        block_keys = self._block_index.get(entry.block_height)
        if block_keys is not None:
            block_keys.pop(entry.key, None)
            if not block_keys:
                del self._block_index[entry.block_height]

        if entry.tx_hash is not None:
            tx_keys = self._tx_index.get(entry.tx_hash)
            if tx_keys is not None:
                tx_keys.pop(entry.key, None)
                if not tx_keys:
                    del self._tx_index[entry.tx_hash]
