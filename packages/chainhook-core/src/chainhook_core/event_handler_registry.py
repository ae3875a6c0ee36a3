#!/usr/bin/env python3
"""Event handler registry and dispatcher.

Handlers are registered per event type and invoked sequentially, in
registration order, when an event of that type is dispatched. A failing
handler is recorded as a failed action and reported to the error handlers;
it never stops the remaining handlers or reaches the caller.

The registry holds no locks. It is safe on a single asyncio event loop;
callers sharing it across threads must serialize access themselves.
"""

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from .models import (
    ActionOutcome,
    ActionStatus,
    ChainEvent,
    EventHandlerResponse,
    PredicateResult,
    now_ms,
)
from .utils.callables import call_handler

# Get logger for this module
logger = logging.getLogger(__name__)

ANY_EVENT = "*"

EventHandler = Callable[[ChainEvent, Any], Awaitable[None] | None]
ActionHandler = Callable[[dict[str, Any]], Any]
ErrorHandler = Callable[[Exception, ChainEvent], Awaitable[None] | None]


def _handler_name(handler: Callable[..., Any]) -> str:
    name = getattr(handler, "__name__", None)
    if not name or name == "<lambda>":
        return "anonymous"
    return name


def hash_event(event: ChainEvent) -> str:
    """Fingerprint an event for log correlation.

    A 32-bit rolling hash over the event's JSON serialization. It is order
    dependent and not collision resistant; never use it for deduplication.
    """
    event_str = json.dumps(event.to_dict(), default=str, separators=(",", ":"))
    h = 0
    for char in event_str:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x")


class EventHandlerRegistry:
    """Manages event, action and error handlers and dispatches events."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._action_handlers: dict[str, ActionHandler] = {}
        self._error_handlers: list[ErrorHandler] = []

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type; several per type are allowed."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Registered handler {_handler_name(handler)} for '{event_type}'")

    def register_action_handler(self, action_name: str, handler: ActionHandler) -> None:
        """Register the handler for a named action, replacing any previous one."""
        if action_name in self._action_handlers:
            logger.warning(f"Replacing action handler for '{action_name}'")
        self._action_handlers[action_name] = handler

    def register_error_handler(self, handler: ErrorHandler) -> None:
        """Register an observer called with ``(error, event)`` on handler failure."""
        self._error_handlers.append(handler)

    async def dispatch(
        self,
        event_type: str,
        event: ChainEvent,
        context: Any = None,
    ) -> EventHandlerResponse:
        """Dispatch an event to every handler registered for ``event_type``.

        Args:
            event_type: Routing key the handlers were registered under
            event: The event to hand to each handler
            context: Optional value passed as second argument to handlers

        Returns:
            EventHandlerResponse with one action entry per handler
        """
        start = time.monotonic()
        actions: list[ActionOutcome] = []

        for handler in list(self._handlers.get(event_type, [])):
            name = _handler_name(handler)
            try:
                await call_handler(handler, event, context)
                actions.append(ActionOutcome(name=name, status=ActionStatus.SUCCESS))
            except Exception as e:
                logger.warning(f"Handler {name} failed for '{event_type}' event: {e}")
                actions.append(ActionOutcome(name=name, status=ActionStatus.FAILED, error=str(e)))
                await self._notify_error_handlers(e, event)

        return EventHandlerResponse(
            success=len(actions) > 0,
            event_hash=hash_event(event),
            handled_at=now_ms(),
            processing_time_ms=int((time.monotonic() - start) * 1000),
            actions=tuple(actions),
        )

    async def _notify_error_handlers(self, error: Exception, event: ChainEvent) -> None:
        for error_handler in list(self._error_handlers):
            try:
                await call_handler(error_handler, error, event)
            except Exception as handler_error:
                logger.error(f"Error handler failed: {handler_error}", exc_info=True)

    async def execute_actions(
        self,
        predicate_result: PredicateResult,
        context: dict[str, Any] | None = None,
    ) -> list[ActionOutcome]:
        """Run the actions attached to a matched predicate result.

        Each action handler receives a dict with ``event``, ``predicate_id``
        and the entries of ``context``. Action names without a registered
        handler are skipped.

        Returns:
            One outcome per executed action, in attachment order
        """
        results: list[ActionOutcome] = []

        for action_name in predicate_result.actions:
            handler = self._action_handlers.get(action_name)
            if handler is None:
                logger.debug(f"No handler registered for action '{action_name}', skipping")
                continue

            data = {
                "event": predicate_result.event,
                "predicate_id": predicate_result.predicate_id,
                **(context or {}),
            }
            try:
                result = await call_handler(handler, data)
                results.append(ActionOutcome(name=action_name, status=ActionStatus.SUCCESS, result=result))
            except Exception as e:
                logger.error(
                    f"Action '{action_name}' failed for predicate {predicate_result.predicate_id}: {e}"
                )
                results.append(ActionOutcome(name=action_name, status=ActionStatus.FAILED, error=str(e)))

        return results

    def clear(self) -> None:
        """Remove every registration (used between tests)."""
        self._handlers.clear()
        self._action_handlers.clear()
        self._error_handlers.clear()

    def get_handlers(self, event_type: str) -> list[EventHandler]:
        return list(self._handlers.get(event_type, []))

    def get_event_types(self) -> list[str]:
        return list(self._handlers.keys())

    def get_action_names(self) -> list[str]:
        return list(self._action_handlers.keys())


class EventHandlerBuilder:
    """Fluent API for registering handlers on a registry."""

    def __init__(self, registry: EventHandlerRegistry) -> None:
        self.registry = registry

    def on_transfer(self, handler: EventHandler) -> "EventHandlerBuilder":
        self.registry.register_handler("transfer", handler)
        return self

    def on_contract_call(self, handler: EventHandler) -> "EventHandlerBuilder":
        self.registry.register_handler("contract-call", handler)
        return self

    def on_mint(self, handler: EventHandler) -> "EventHandlerBuilder":
        self.registry.register_handler("mint", handler)
        return self

    def on_metadata_update(self, handler: EventHandler) -> "EventHandlerBuilder":
        self.registry.register_handler("metadata-update", handler)
        return self

    def on_reorg(self, handler: EventHandler) -> "EventHandlerBuilder":
        self.registry.register_handler("reorg", handler)
        return self

    def on_any_event(self, handler: EventHandler) -> "EventHandlerBuilder":
        self.registry.register_handler(ANY_EVENT, handler)
        return self

    def action(self, name: str, handler: ActionHandler) -> "EventHandlerBuilder":
        self.registry.register_action_handler(name, handler)
        return self

    def on_error(self, handler: ErrorHandler) -> "EventHandlerBuilder":
        self.registry.register_error_handler(handler)
        return self


# Process-wide registry shared by the ingestion pipeline
event_handler_registry = EventHandlerRegistry()
