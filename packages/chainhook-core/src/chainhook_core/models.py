#!/usr/bin/env python3
"""Data models for the chainhook core.

This module provides immutable data classes for the chain events consumed by
the core, the predicate configuration used to match them, and the structured
results returned by evaluation, dispatch and reorg tracking.
"""

import time
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar

from web3 import Web3


def now_ms() -> int:
    """Current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


class EventType(str, Enum):
    """Chain event categories a predicate can target."""
    TX = "tx"
    BLOCK = "block"
    MICROBLOCK = "microblock"


class Network(str, Enum):
    """Networks a predicate can be bound to."""
    MAINNET = "mainnet"
    TESTNET = "testnet"


class EntityType(str, Enum):
    """Entities whose metadata can change on chain."""
    BADGE = "badge"
    COMMUNITY = "community"
    PROFILE = "profile"


class ActionStatus(str, Enum):
    """Outcome of a single handler or action invocation."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


def _plain(value: Any) -> Any:
    """Convert a field value into a JSON-friendly structure."""
    match value:
        case Enum():
            return value.value
        case frozenset() | set():
            return sorted(value)
        case tuple() | list():
            return [_plain(item) for item in value]
        case Mapping():
            return {key: _plain(item) for key, item in value.items()}
        case ChainEvent():
            return value.to_dict()
        case _:
            return value


# ---------------------------------------------------------------------------
# Chain events
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True, kw_only=True)
class ChainEvent:
    """Common fields shared by every chain event.

    The concrete variants below form a closed family; ``kind`` is the routing
    key used when an event is dispatched to registered handlers.

    Attributes:
        type: Event category matched against a predicate's event type
        timestamp: Unix timestamp in milliseconds
        block_height: Height of the block containing the event
        block_hash: Hash of the block containing the event
        tx_hash: Hash of the originating transaction, when there is one
    """

    kind: ClassVar[str] = "event"

    type: EventType = EventType.TX
    timestamp: int
    block_height: int
    block_hash: str
    tx_hash: str | None = None

    def __post_init__(self) -> None:
        if type(self) is ChainEvent:
            raise TypeError("ChainEvent is abstract; instantiate one of its event variants")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {"kind": self.kind}
        for f in fields(self):
            data[f.name] = _plain(getattr(self, f.name))
        return data

    @property
    def event_id(self) -> str:
        """Identifier used to key per-event results."""
        return self.tx_hash or self.block_hash


@dataclass(frozen=True, slots=True, kw_only=True)
class TransferEvent(ChainEvent):
    """A token transfer between two principals.

    ``amount`` is an unbounded Python int so values beyond the 64-bit range
    compare exactly.
    """

    kind: ClassVar[str] = "transfer"

    sender: str
    recipient: str
    amount: int
    tx_index: int = 0

    def __str__(self) -> str:
        return (
            f"TransferEvent(block={self.block_height}, "
            f"sender={self.sender[:8]}..., amount={self.amount})"
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class ContractCallEvent(ChainEvent):
    """A public function call on a contract."""

    kind: ClassVar[str] = "contract-call"

    contract: str
    function: str
    args: Mapping[str, Any] = field(default_factory=dict)
    success: bool = True
    tx_index: int = 0

    def __str__(self) -> str:
        return (
            f"ContractCallEvent(block={self.block_height}, "
            f"call={self.contract}::{self.function}, success={self.success})"
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class MintEvent(ChainEvent):
    """An NFT mint."""

    kind: ClassVar[str] = "mint"

    token_id: str
    recipient: str
    contract_address: str
    metadata: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class MetadataUpdateEvent(ChainEvent):
    """A change to the metadata of a badge, community or profile."""

    kind: ClassVar[str] = "metadata-update"

    entity_id: str
    entity_type: EntityType
    changes: Mapping[str, Any] = field(default_factory=dict)
    previous_values: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class ReorgEvent(ChainEvent):
    """A chain reorganization reported by the indexer.

    ``block_height`` is the height at which the reorg was observed.

    Attributes:
        reorg_depth: Number of blocks rolled back as reported by the indexer
        common_ancestor_height: Last height both branches agreed on
        removed_block_hashes: Blocks of the discarded branch
        added_block_hashes: Blocks of the new canonical branch
        affected_transactions: Transactions unique to the discarded branch
    """

    kind: ClassVar[str] = "reorg"

    type: EventType = EventType.BLOCK
    reorg_depth: int
    common_ancestor_height: int
    removed_block_hashes: tuple[str, ...] = ()
    added_block_hashes: tuple[str, ...] = ()
    affected_transactions: tuple[str, ...] = ()


_EVENT_KINDS: dict[str, type[ChainEvent]] = {
    cls.kind: cls
    for cls in (TransferEvent, ContractCallEvent, MintEvent, MetadataUpdateEvent, ReorgEvent)
}

_HASH_FIELDS = {"block_hash", "tx_hash"}
_HASH_LIST_FIELDS = {"removed_block_hashes", "added_block_hashes", "affected_transactions"}


def _normalize_hash(value: Any) -> str | None:
    """Normalize a hash given as bytes or string to a string."""
    match value:
        case None:
            return None
        case bytes() | bytearray():
            return Web3.to_hex(bytes(value))
        case str():
            return value
        case _:
            return str(value)


def _parse_amount(value: Any) -> int:
    """Parse an unsigned amount without going through floating point."""
    match value:
        case bool():
            raise ValueError(f"Invalid amount: {value!r}")
        case int():
            amount = value
        case str():
            amount = int(value, 0) if value.lower().startswith("0x") else int(value)
        case _:
            raise ValueError(f"Invalid amount: {value!r}")
    if amount < 0:
        raise ValueError(f"Amount must be unsigned, got {amount}")
    return amount


def event_from_dict(data: Mapping[str, Any]) -> ChainEvent:
    """Rebuild a chain event from its ``to_dict`` form.

    Args:
        data: Mapping carrying a ``kind`` discriminator and the event fields

    Returns:
        The matching ChainEvent variant

    Raises:
        ValueError: If the kind is unknown or a field cannot be converted
    """
    kind = data.get("kind")
    event_cls = _EVENT_KINDS.get(kind)
    if event_cls is None:
        raise ValueError(f"Unknown event kind: {kind!r}")

    kwargs: dict[str, Any] = {}
    for f in fields(event_cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.name == "type":
            value = EventType(value)
        elif f.name == "entity_type":
            value = EntityType(value)
        elif f.name == "amount":
            value = _parse_amount(value)
        elif f.name in _HASH_FIELDS:
            value = _normalize_hash(value)
        elif f.name in _HASH_LIST_FIELDS:
            value = tuple(_normalize_hash(item) for item in value or ())
        kwargs[f.name] = value

    try:
        return event_cls(**kwargs)
    except TypeError as e:
        raise ValueError(f"Malformed {kind} event: {e}") from None


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PredicateFilters:
    """Optional filters of a predicate; ``None`` means wildcard."""
    function_name: str | None = None
    sender: str | None = None
    recipient: str | None = None
    min_amount: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "function_name": self.function_name,
            "sender": self.sender,
            "recipient": self.recipient,
            "min_amount": self.min_amount,
        }


@dataclass(frozen=True, slots=True)
class PredicateConfig:
    """Declarative description of the chain events a consumer cares about.

    Predicates are immutable; use ``dataclasses.replace`` to derive a changed
    copy.

    Attributes:
        id: Unique predicate identifier
        name: Human-readable name
        network: Network the predicate applies to
        event_type: Event category to match
        filters: Field filters, all of which must pass
        contract_address: Contract the predicate is scoped to, informational
        enabled: Disabled predicates never produce results
        created_at: Creation time in milliseconds
        actions: Action names attached to results when the predicate matches
    """

    id: str
    name: str
    network: Network | str
    event_type: EventType | str
    filters: PredicateFilters | None
    contract_address: str | None = None
    enabled: bool = True
    created_at: int = 0
    actions: tuple[str, ...] = ("trigger",)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "network": _plain(self.network),
            "event_type": _plain(self.event_type),
            "filters": self.filters.to_dict() if self.filters else None,
            "contract_address": self.contract_address,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "actions": list(self.actions),
        }


@dataclass(frozen=True, slots=True)
class PredicateResult:
    """Result of evaluating one event against one predicate."""
    predicate_id: str
    matched: bool
    event: ChainEvent
    matched_at: int
    actions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "predicate_id": self.predicate_id,
            "matched": self.matched,
            "event": self.event.to_dict(),
            "matched_at": self.matched_at,
            "actions": list(self.actions),
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Structural validation outcome; ``errors`` lists every violation."""
    valid: bool
    errors: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """Outcome of one handler or action invocation."""
    name: str
    status: ActionStatus
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True, slots=True)
class EventHandlerResponse:
    """Response of a dispatch, consumed by logging and alerting.

    Attributes:
        success: True when at least one handler ran
        event_hash: Non-cryptographic fingerprint for log correlation
        handled_at: Completion time in milliseconds
        processing_time_ms: Wall time spent in handlers
        actions: One outcome per handler, in invocation order
    """

    success: bool
    event_hash: str
    handled_at: int
    processing_time_ms: int
    actions: tuple[ActionOutcome, ...] = ()

    @property
    def failed_actions(self) -> tuple[ActionOutcome, ...]:
        return tuple(a for a in self.actions if a.status is ActionStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "event_hash": self.event_hash,
            "handled_at": self.handled_at,
            "processing_time_ms": self.processing_time_ms,
            "actions": [a.to_dict() for a in self.actions],
        }


# ---------------------------------------------------------------------------
# Reorg tracking
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ReorgState:
    """Snapshot of one observed reorganization.

    Attributes:
        reorg_height: Height at which the reorg was observed
        common_ancestor_height: Last height both branches agreed on
        affected_transactions: Transactions invalidated by the reorg
        removed_blocks: Blocks of the discarded branch
        added_blocks: Blocks of the new canonical branch
        timestamp: Observation time in milliseconds
    """

    reorg_height: int
    common_ancestor_height: int
    affected_transactions: frozenset[str]
    removed_blocks: frozenset[str]
    added_blocks: frozenset[str]
    timestamp: int

    @property
    def depth(self) -> int:
        return self.reorg_height - self.common_ancestor_height

    def __str__(self) -> str:
        return (
            f"ReorgState(height={self.reorg_height}, "
            f"ancestor={self.common_ancestor_height}, "
            f"txs={len(self.affected_transactions)}, "
            f"removed_blocks={len(self.removed_blocks)})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "reorg_height": self.reorg_height,
            "common_ancestor_height": self.common_ancestor_height,
            "affected_transactions": sorted(self.affected_transactions),
            "removed_blocks": sorted(self.removed_blocks),
            "added_blocks": sorted(self.added_blocks),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class RecoveryActions:
    """What an external indexer must re-fetch or reconcile after reorgs."""
    reprocess_blocks: tuple[str, ...] = ()
    reprocess_transactions: tuple[str, ...] = ()
    verify_data_integrity: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "reprocess_blocks": list(self.reprocess_blocks),
            "reprocess_transactions": list(self.reprocess_transactions),
            "verify_data_integrity": self.verify_data_integrity,
        }


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Outcome of reorg-aware processing of one event."""
    processed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Reorg-aware cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached value tagged with the block (and transaction) it derives from."""
    key: str
    value: Any
    block_height: int
    timestamp: int
    tx_hash: str | None = None


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Size of a reorg-aware cache and the block range it covers."""
    total_entries: int
    blocks_tracked: int
    oldest_block: int | None = None
    newest_block: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "blocks_tracked": self.blocks_tracked,
            "oldest_block": self.oldest_block,
            "newest_block": self.newest_block,
        }
