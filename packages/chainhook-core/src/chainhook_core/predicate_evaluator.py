#!/usr/bin/env python3
"""Predicate evaluation for chain events.

This module decides whether chain events match declarative predicates and
provides validation and fluent construction of predicate configurations.
Evaluation is pure; only ``PredicateBuilder.build`` raises on invalid input.
"""

import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any

from web3 import Web3

from .models import (
    ChainEvent,
    EventType,
    Network,
    PredicateConfig,
    PredicateFilters,
    PredicateResult,
    ValidationResult,
    now_ms,
)

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_ACTION = "trigger"

_MISSING = object()


class InvalidPredicateError(ValueError):
    """Raised when a predicate fails structural validation."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: tuple[str, ...] = tuple(errors)
        super().__init__(f"Invalid predicate: {', '.join(self.errors)}")


class PredicateEvaluator:
    """Evaluates whether events match predicate conditions."""

    @staticmethod
    def evaluate_event(event: ChainEvent, predicate: PredicateConfig) -> PredicateResult:
        """Evaluate a single event against a predicate.

        Args:
            event: The chain event to test
            predicate: The predicate to test it against

        Returns:
            PredicateResult carrying the predicate's actions when matched
        """
        matched = PredicateEvaluator._matches_predicate(event, predicate)
        return PredicateResult(
            predicate_id=predicate.id,
            matched=matched,
            event=event,
            matched_at=now_ms(),
            actions=tuple(predicate.actions) if matched else (),
        )

    @staticmethod
    def _matches_predicate(event: ChainEvent, predicate: PredicateConfig) -> bool:
        """Check the event type and every non-null filter.

        A filter on a field the event does not carry never passes.
        """
        if event.type != predicate.event_type:
            return False

        filters = _as_filters(predicate.filters)
        if filters is None:
            return False

        if filters.function_name is not None:
            if getattr(event, "function", _MISSING) != filters.function_name:
                return False

        if filters.sender is not None:
            if getattr(event, "sender", _MISSING) != filters.sender:
                return False

        if filters.recipient is not None:
            if getattr(event, "recipient", _MISSING) != filters.recipient:
                return False

        if filters.min_amount is not None:
            amount = getattr(event, "amount", None)
            if not _is_amount(filters.min_amount) or not _is_amount(amount):
                return False
            if amount < filters.min_amount:
                return False

        return True

    @staticmethod
    def evaluate_events(
        events: Iterable[ChainEvent],
        predicates: Iterable[PredicateConfig],
    ) -> list[PredicateResult]:
        """Evaluate events against every enabled predicate.

        Returns:
            Matched results only, grouped by predicate in input order
        """
        events = list(events)
        results: list[PredicateResult] = []

        for predicate in predicates:
            if not predicate.enabled:
                continue

            for event in events:
                result = PredicateEvaluator.evaluate_event(event, predicate)
                if result.matched:
                    results.append(result)

        return results

    @staticmethod
    def validate_predicate(predicate: PredicateConfig) -> ValidationResult:
        """Validate predicate structure without raising.

        Every problem is reported, not only the first one.
        """
        errors: list[str] = []

        if not isinstance(predicate.id, str) or not predicate.id.strip():
            errors.append("Predicate ID is required")

        if not isinstance(predicate.name, str) or not predicate.name.strip():
            errors.append("Predicate name is required")

        if not predicate.network:
            errors.append("Network is required")
        elif not _is_member(Network, predicate.network):
            errors.append(f"Invalid network: {predicate.network}")

        if not _is_member(EventType, predicate.event_type):
            errors.append("Invalid event type")

        filters = _as_filters(predicate.filters)
        if predicate.filters is None:
            errors.append("Filters object is required")
        elif filters is None:
            errors.append("Invalid filters")
        elif filters.min_amount is not None:
            if not _is_amount(filters.min_amount) or filters.min_amount < 0:
                errors.append("Minimum amount must be a non-negative integer")

        return ValidationResult(valid=not errors, errors=tuple(errors))

    @staticmethod
    def create_predicate(**config: Any) -> PredicateConfig:
        """Create a predicate from a partial configuration.

        Only keys that are absent or ``None`` get defaults; explicitly empty
        values are kept so validation can reject them.
        """
        name = _option(config, "name", "Unnamed Predicate")
        predicate_id = config.get("id")
        if predicate_id is None:
            predicate_id = _generate_predicate_id(name)

        return PredicateConfig(
            id=predicate_id,
            name=name,
            network=_option(config, "network", Network.TESTNET),
            contract_address=config.get("contract_address"),
            event_type=_option(config, "event_type", EventType.TX),
            filters=_coerce_filters(_option(config, "filters", PredicateFilters())),
            enabled=_option(config, "enabled", True),
            created_at=_option(config, "created_at", None) or now_ms(),
            actions=tuple(_option(config, "actions", (DEFAULT_ACTION,))),
        )


def _option(config: dict[str, Any], key: str, default: Any) -> Any:
    value = config.get(key)
    return default if value is None else value


def _as_filters(value: Any) -> PredicateFilters | None:
    """Read filters given as PredicateFilters or a plain mapping.

    Missing filters read as the wildcard; returns ``None`` for a value that
    is not a filters object (e.g. a mapping with unknown keys).
    """
    match value:
        case None:
            return PredicateFilters()
        case PredicateFilters():
            return value
        case Mapping():
            try:
                return PredicateFilters(**value)
            except TypeError:
                return None
        case _:
            return None


def _coerce_filters(value: Any) -> Any:
    # Unreadable values are kept so validation can report them
    if isinstance(value, Mapping):
        return _as_filters(value) or value
    return value


def _is_amount(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_member(enum_cls: type, value: Any) -> bool:
    try:
        enum_cls(value)
    except ValueError:
        return False
    return True


def _generate_predicate_id(name: str) -> str:
    digest = Web3.to_hex(Web3.keccak(text=f"{name}-{time.time_ns()}"))
    return f"predicate-{digest[2:14]}"


class PredicateBuilder:
    """Fluent API for building validated predicates."""

    def __init__(self) -> None:
        self._config: dict[str, Any] = {}
        self._filters: dict[str, Any] = {}
        self._actions: list[str] = []

    def with_id(self, predicate_id: str) -> "PredicateBuilder":
        self._config["id"] = predicate_id
        return self

    def with_name(self, name: str) -> "PredicateBuilder":
        self._config["name"] = name
        return self

    def with_network(self, network: Network | str) -> "PredicateBuilder":
        self._config["network"] = network
        return self

    def with_contract_address(self, contract_address: str) -> "PredicateBuilder":
        self._config["contract_address"] = contract_address
        return self

    def with_event_type(self, event_type: EventType | str) -> "PredicateBuilder":
        self._config["event_type"] = event_type
        return self

    def with_function_name(self, function_name: str) -> "PredicateBuilder":
        self._filters["function_name"] = function_name
        return self

    def with_sender(self, sender: str) -> "PredicateBuilder":
        self._filters["sender"] = sender
        return self

    def with_recipient(self, recipient: str) -> "PredicateBuilder":
        self._filters["recipient"] = recipient
        return self

    def with_min_amount(self, amount: int) -> "PredicateBuilder":
        self._filters["min_amount"] = amount
        return self

    def with_action(self, action_name: str) -> "PredicateBuilder":
        self._actions.append(action_name)
        return self

    def enabled(self, enabled: bool = True) -> "PredicateBuilder":
        self._config["enabled"] = enabled
        return self

    def build(self) -> PredicateConfig:
        """Build and validate the predicate.

        Raises:
            InvalidPredicateError: If any validation rule is violated
        """
        predicate = PredicateEvaluator.create_predicate(
            **self._config,
            filters=PredicateFilters(**self._filters),
            actions=self._actions or None,
        )
        validation = PredicateEvaluator.validate_predicate(predicate)

        if not validation.valid:
            raise InvalidPredicateError(validation.errors)

        logger.debug(f"Built predicate {predicate.id} ({predicate.name})")
        return predicate
