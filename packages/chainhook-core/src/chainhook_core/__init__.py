"""
Chainhook core package.

Predicate matching, handler dispatch and reorg-aware processing of chain events.
"""

from .config import ChainhookConfig, load_predicates
from .event_handler_registry import EventHandlerBuilder, EventHandlerRegistry, event_handler_registry
from .ingestor import ChainhookIngestor, IngestResult
from .models import (
    ChainEvent,
    ContractCallEvent,
    EventType,
    MetadataUpdateEvent,
    MintEvent,
    PredicateConfig,
    ReorgEvent,
    TransferEvent,
    event_from_dict,
)
from .predicate_evaluator import InvalidPredicateError, PredicateBuilder, PredicateEvaluator
from .reorg_cache import ReorgAwareCache
from .reorg_tracker import ReorgAwareEventProcessor, ReorgTracker

__all__ = [
    "ChainhookConfig",
    "ChainhookIngestor",
    "IngestResult",
    "EventHandlerRegistry",
    "EventHandlerBuilder",
    "event_handler_registry",
    "ChainEvent",
    "TransferEvent",
    "ContractCallEvent",
    "MintEvent",
    "MetadataUpdateEvent",
    "ReorgEvent",
    "EventType",
    "PredicateConfig",
    "event_from_dict",
    "PredicateEvaluator",
    "PredicateBuilder",
    "InvalidPredicateError",
    "ReorgTracker",
    "ReorgAwareEventProcessor",
    "ReorgAwareCache",
    "load_predicates",
]
__version__ = "0.1.0"
