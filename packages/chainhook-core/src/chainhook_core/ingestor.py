#!/usr/bin/env python3
"""Chain event ingestion pipeline.

This module wires the reorg tracker, predicate evaluator and handler registry
together: reorg events update the tracker, every other event is checked
against the recorded reorgs, pre-filtered by the configured predicates and
dispatched to the registered handlers and actions.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .config import ChainhookConfig
from .event_handler_registry import ANY_EVENT, EventHandlerRegistry, event_handler_registry
from .models import (
    ActionOutcome,
    ChainEvent,
    EventHandlerResponse,
    PredicateConfig,
    RecoveryActions,
    ReorgEvent,
    ReorgState,
)
from .predicate_evaluator import DEFAULT_ACTION, PredicateEvaluator
from .reorg_cache import ReorgAwareCache
from .reorg_tracker import (
    BLOCK_REMOVED_REASON,
    HOUR_MS,
    TX_AFFECTED_REASON,
    ReorgAwareEventProcessor,
    ReorgTracker,
)
from .utils.webhook_action import WebhookAction

# Get logger for this module
logger = logging.getLogger(__name__)

NO_MATCH_REASON = "No predicate matched"


@dataclass
class IngestResult:
    """Outcome of ingesting one event.

    Attributes:
        processed: True when the event was handled
        reason: Why the event was not processed, when it was not
        matched_predicates: IDs of the predicates the event matched
        responses: Dispatch responses, one per routing key
        action_results: Outcomes of the actions of matched predicates
        filtered: True when no configured predicate matched the event
    """

    processed: bool
    reason: str | None = None
    matched_predicates: list[str] = field(default_factory=list)
    responses: list[EventHandlerResponse] = field(default_factory=list)
    action_results: list[ActionOutcome] = field(default_factory=list)
    filtered: bool = False


class ChainhookIngestor:
    """Ingests chain events in a reorg-safe manner.

    Without predicates every event is dispatched; with predicates only events
    matching at least one enabled predicate are.
    """

    def __init__(
        self,
        config: ChainhookConfig,
        registry: EventHandlerRegistry | None = None,
        tracker: ReorgTracker | None = None,
        predicates: Iterable[PredicateConfig] = (),
        cache: ReorgAwareCache | None = None,
    ) -> None:
        """Initialize the ingestor.

        Args:
            config: Chainhook configuration
            registry: Handler registry, the process-wide one by default
            tracker: Reorg tracker, a fresh one by default
            predicates: Predicates used to pre-filter events
            cache: Cache rolled back whenever a reorg is ingested (optional)
        """
        self.config = config
        self.registry = registry if registry is not None else event_handler_registry
        self.tracker = tracker or ReorgTracker(max_reorg_depth=config.reorg.max_reorg_depth)
        self.processor = ReorgAwareEventProcessor(self.tracker)
        self.predicates: list[PredicateConfig] = list(predicates)
        self.cache = cache

        # Metrics tracking
        self.events_received = 0
        self.events_processed = 0
        self.events_rejected = 0
        self.events_filtered = 0
        self.events_failed = 0
        self.reorgs_handled = 0

        if config.webhook.enabled:
            self.registry.register_action_handler(
                DEFAULT_ACTION,
                WebhookAction(
                    url=config.webhook.url,
                    secret=config.webhook.secret,
                    timeout=config.webhook.timeout,
                ),
            )
            logger.info(f"Webhook action registered as '{DEFAULT_ACTION}'")

        logger.info(
            f"ChainhookIngestor initialized for {config.network} "
            f"with {len(self.predicates)} predicates"
        )

    async def ingest(self, event: ChainEvent, context: dict[str, Any] | None = None) -> IngestResult:
        """Ingest a single event.

        Never raises; failures are reported in the returned IngestResult.
        """
        self.events_received += 1

        if isinstance(event, ReorgEvent):
            return await self._ingest_reorg(event, context)

        outcome = IngestResult(processed=False)

        async def route(evt: ChainEvent) -> None:
            await self._route_event(evt, outcome, context)

        result = await self.processor.process_event(event, route)

        if result.processed and outcome.filtered:
            outcome.reason = NO_MATCH_REASON
            self.events_filtered += 1
        elif result.processed:
            outcome.processed = True
            self.events_processed += 1
        elif result.reason in (TX_AFFECTED_REASON, BLOCK_REMOVED_REASON):
            outcome.reason = result.reason
            self.events_rejected += 1
        else:
            outcome.reason = result.reason
            self.events_failed += 1

        return outcome

    async def _route_event(
        self,
        event: ChainEvent,
        outcome: IngestResult,
        context: dict[str, Any] | None,
    ) -> None:
        """Evaluate predicates, dispatch the event and run matched actions.

        Marks the outcome as filtered, without dispatching, when predicates
        are configured and none of them matched.
        """
        matches = []
        if self.predicates:
            matches = PredicateEvaluator.evaluate_events([event], self.predicates)
            if not matches:
                outcome.filtered = True
                return
            outcome.matched_predicates = [m.predicate_id for m in matches]

        outcome.responses = await self._dispatch(event.kind, event, context)

        for match in matches:
            outcome.action_results.extend(await self.registry.execute_actions(match, context))

        failed = [a for r in outcome.responses for a in r.failed_actions]
        if failed:
            logger.warning(
                f"{len(failed)} handler(s) failed for {event.kind} event {event.event_id}"
            )

    async def _dispatch(
        self,
        kind: str,
        event: ChainEvent,
        context: dict[str, Any] | None,
    ) -> list[EventHandlerResponse]:
        responses = [await self.registry.dispatch(kind, event, context)]
        if self.registry.get_handlers(ANY_EVENT):
            responses.append(await self.registry.dispatch(ANY_EVENT, event, context))
        return responses

    async def _ingest_reorg(self, event: ReorgEvent, context: dict[str, Any] | None) -> IngestResult:
        try:
            state = await self.tracker.handle_reorg(event)
            self.reorgs_handled += 1
            self._check_reorg_alerts(state)
            if self.cache is not None:
                self.cache.handle_reorg(event)
            responses = await self._dispatch(event.kind, event, context)
        except Exception as e:
            self.events_failed += 1
            logger.error(f"Error handling reorg at height {event.block_height}: {e}", exc_info=True)
            return IngestResult(processed=False, reason=str(e))

        self.events_processed += 1
        return IngestResult(processed=True, responses=responses)

    def _check_reorg_alerts(self, state: ReorgState) -> None:
        thresholds = self.config.reorg

        if state.depth > thresholds.max_reorg_depth:
            logger.error(
                f"Reorg depth {state.depth} exceeds maximum rollback depth "
                f"{thresholds.max_reorg_depth}; full resynchronization required"
            )
        elif state.depth > thresholds.deep_reorg_blocks:
            logger.warning(
                f"Deep reorg detected: {state.depth} blocks "
                f"(threshold {thresholds.deep_reorg_blocks})"
            )

        if len(state.affected_transactions) > thresholds.large_impact_transactions:
            logger.warning(
                f"Large impact reorg: {len(state.affected_transactions)} transactions affected "
                f"(threshold {thresholds.large_impact_transactions})"
            )

        recent = self.tracker.count_recent_reorgs(HOUR_MS)
        if recent > thresholds.frequent_reorg_per_hour:
            logger.warning(
                f"Frequent reorgs: {recent} in the last hour "
                f"(threshold {thresholds.frequent_reorg_per_hour})"
            )

    async def ingest_batch(
        self,
        events: Iterable[ChainEvent],
        context: dict[str, Any] | None = None,
    ) -> list[IngestResult]:
        """Ingest events in order; each one is isolated from the others."""
        return [await self.ingest(event, context) for event in events]

    def get_recovery_actions(self) -> RecoveryActions:
        return self.tracker.get_recovery_actions()

    def reset_reorg_state(self) -> None:
        """Clear reorg history after the indexer completed a full resync."""
        self.tracker.reset()

    def get_metrics(self) -> dict[str, int]:
        """Get current ingestion metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "events_received": self.events_received,
            "events_processed": self.events_processed,
            "events_rejected": self.events_rejected,
            "events_filtered": self.events_filtered,
            "events_failed": self.events_failed,
            "reorgs_handled": self.reorgs_handled,
            "reorg_depth": self.tracker.get_current_reorg_depth(),
        }

    def log_metrics(self) -> None:
        """Log current ingestion metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"Ingestor Metrics: "
            f"Received={metrics['events_received']}, "
            f"Processed={metrics['events_processed']}, "
            f"Rejected={metrics['events_rejected']}, "
            f"Filtered={metrics['events_filtered']}, "
            f"Failed={metrics['events_failed']}, "
            f"Reorgs={metrics['reorgs_handled']}"
        )
