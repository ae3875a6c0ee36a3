#!/usr/bin/env python3
"""Configuration management for the chainhook core.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults;
predicates can additionally be loaded from a JSON file.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlparse

from .models import PredicateConfig
from .predicate_evaluator import PredicateBuilder

# Get logger for this module
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class ReorgConfig:
    """Configuration for reorganization handling and alerting.

    Attributes:
        max_reorg_depth: Deepest rollback considered recoverable
        deep_reorg_blocks: Depth above which a reorg is reported as deep
        large_impact_transactions: Affected-transaction count reported as large
        frequent_reorg_per_hour: Reorgs per hour above which reorgs are reported as frequent
    """

    max_reorg_depth: int = 100
    deep_reorg_blocks: int = 10
    large_impact_transactions: int = 100
    frequent_reorg_per_hour: int = 5

    def __post_init__(self) -> None:
        """Validate reorg configuration."""
        if self.max_reorg_depth <= 0:
            raise ValueError(f"Max reorg depth must be positive, got {self.max_reorg_depth}")
        if self.max_reorg_depth > 10_000:
            raise ValueError(f"Max reorg depth too high (max 10000), got {self.max_reorg_depth}")

        if self.deep_reorg_blocks <= 0:
            raise ValueError(f"Deep reorg threshold must be positive, got {self.deep_reorg_blocks}")
        if self.deep_reorg_blocks > self.max_reorg_depth:
            raise ValueError(
                f"Deep reorg threshold ({self.deep_reorg_blocks}) cannot exceed "
                f"max reorg depth ({self.max_reorg_depth})"
            )

        if self.large_impact_transactions <= 0:
            raise ValueError(
                f"Large impact threshold must be positive, got {self.large_impact_transactions}"
            )

        if self.frequent_reorg_per_hour <= 0:
            raise ValueError(
                f"Frequent reorg threshold must be positive, got {self.frequent_reorg_per_hour}"
            )


@dataclass(frozen=True, slots=True)
class WebhookConfig:
    """Configuration for the outbound webhook action.

    Attributes:
        url: Endpoint receiving matched events; the action is disabled when unset
        secret: Shared secret used to sign payloads (optional)
        timeout: Request timeout in seconds
    """

    url: str | None = None
    secret: str | None = None
    timeout: int = 10

    def __post_init__(self) -> None:
        """Validate webhook configuration."""
        if self.url:
            parsed = urlparse(self.url)
            if parsed.scheme not in ("http", "https"):
                raise ValueError(
                    f"Invalid webhook URL scheme: {parsed.scheme}. Expected http or https"
                )
            if not parsed.netloc:
                raise ValueError(f"Invalid webhook URL: {self.url}")

        if self.timeout <= 0:
            raise ValueError(f"Webhook timeout must be positive, got {self.timeout}")
        if self.timeout > 120:
            raise ValueError(f"Webhook timeout too long (max 120s), got {self.timeout}")

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True, slots=True)
class ChainhookConfig:
    """Main configuration for the chainhook core.

    Attributes:
        network: Network the predicates are evaluated for
        reorg: Reorg handling and alerting settings
        webhook: Outbound webhook action settings
        predicates_file: Optional JSON file with predicate definitions
    """

    network: str = "testnet"
    reorg: ReorgConfig = field(default_factory=ReorgConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    predicates_file: str | None = None

    SUPPORTED_NETWORKS: ClassVar[set[str]] = {"mainnet", "testnet"}

    def __post_init__(self) -> None:
        """Validate chainhook configuration."""
        if self.network not in self.SUPPORTED_NETWORKS:
            raise ValueError(
                f"Unsupported network: {self.network}. "
                f"Supported networks: {', '.join(sorted(self.SUPPORTED_NETWORKS))}"
            )

    @classmethod
    def from_env(cls) -> "ChainhookConfig":
        """Load configuration from environment variables.

        Returns:
            ChainhookConfig instance with loaded values

        Raises:
            ValueError: If environment variables are invalid
        """
        reorg_config = ReorgConfig(
            max_reorg_depth=_env_int("REORG_MAX_ROLLBACK_DEPTH", 100),
            deep_reorg_blocks=_env_int("REORG_DEEP_REORG_BLOCKS", 10),
            large_impact_transactions=_env_int("REORG_LARGE_IMPACT_TRANSACTIONS", 100),
            frequent_reorg_per_hour=_env_int("REORG_FREQUENT_REORG_PER_HOUR", 5),
        )

        webhook_config = WebhookConfig(
            url=os.environ.get("CHAINHOOK_WEBHOOK_URL") or None,
            secret=os.environ.get("CHAINHOOK_WEBHOOK_SECRET") or None,
            timeout=_env_int("WEBHOOK_TIMEOUT", 10),
        )

        return cls(
            network=os.environ.get("CHAINHOOK_NETWORK", "testnet"),
            reorg=reorg_config,
            webhook=webhook_config,
            predicates_file=os.environ.get("PREDICATES_FILE") or None,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Chainhook Core Configuration")
        logger.info("=" * 60)

        logger.info(f"Network: {self.network}")

        logger.info("Reorg Handling:")
        logger.info(f"  Max Reorg Depth: {self.reorg.max_reorg_depth} blocks")
        logger.info(f"  Deep Reorg Alert: > {self.reorg.deep_reorg_blocks} blocks")
        logger.info(f"  Large Impact Alert: > {self.reorg.large_impact_transactions} transactions")
        logger.info(f"  Frequent Reorg Alert: > {self.reorg.frequent_reorg_per_hour} per hour")

        logger.info("Webhook Action:")
        if self.webhook.enabled:
            logger.info(f"  URL: {self.webhook.url}")
            logger.info(f"  Secret: {'[SET]' if self.webhook.secret else '[NOT SET]'}")
            logger.info(f"  Timeout: {self.webhook.timeout} seconds")
        else:
            logger.info("  [DISABLED]")

        if self.predicates_file:
            logger.info(f"Predicates File: {self.predicates_file}")

        logger.info("=" * 60)


def _parse_min_amount(value: Any) -> int:
    """Accept a JSON integer or a decimal integer string.

    Large amounts are written as strings to survive JSON tooling.
    """
    match value:
        case bool() | float():
            raise ValueError(f"Minimum amount must be an integer, got {value!r}")
        case int():
            return value
        case str() if value.strip().lstrip("-").isdigit():
            return int(value)
        case _:
            raise ValueError(f"Minimum amount must be an integer, got {value!r}")


def predicate_from_dict(data: dict[str, Any]) -> PredicateConfig:
    """Build a validated predicate from its JSON form.

    Raises:
        ValueError: If a value has the wrong JSON type
        InvalidPredicateError: If the definition fails validation
    """
    builder = PredicateBuilder()

    if "id" in data:
        builder.with_id(data["id"])
    if "name" in data:
        builder.with_name(data["name"])
    if "network" in data:
        builder.with_network(data["network"])
    if data.get("contract_address"):
        builder.with_contract_address(data["contract_address"])
    if "event_type" in data:
        builder.with_event_type(data["event_type"])

    filters = data.get("filters") or {}
    if filters.get("function_name") is not None:
        builder.with_function_name(filters["function_name"])
    if filters.get("sender") is not None:
        builder.with_sender(filters["sender"])
    if filters.get("recipient") is not None:
        builder.with_recipient(filters["recipient"])
    if filters.get("min_amount") is not None:
        builder.with_min_amount(_parse_min_amount(filters["min_amount"]))

    for action in data.get("actions") or ():
        builder.with_action(action)
    if "enabled" in data:
        if not isinstance(data["enabled"], bool):
            raise ValueError(f"Predicate enabled flag must be a boolean, got {data['enabled']!r}")
        builder.enabled(data["enabled"])

    return builder.build()


def load_predicates(path: str | Path) -> list[PredicateConfig]:
    """Load and validate predicates from a JSON array file.

    Raises:
        ValueError: If the file is malformed or any predicate is invalid
    """
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Could not read predicates file {path}: {e}") from e

    if not isinstance(raw, list):
        raise ValueError(f"Predicates file {path} must contain a JSON array")

    predicates = [predicate_from_dict(entry) for entry in raw]
    logger.info(f"Loaded {len(predicates)} predicates from {path}")
    return predicates
