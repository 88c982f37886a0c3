"""Endpoint rules: compilation, static configuration and cached lookup."""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from backend.app.config import Settings
from backend.app.db.repositories import EndpointRuleRecord, EndpointRuleRepository
from backend.app.deferred.errors import InvalidEndpointPatternError
from backend.app.deferred.patterns import EndpointPattern
from backend.app.models.common import HttpMethod, Priority
from backend.app.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Static rules sort after every persisted rule
_STATIC_CREATED_AT = datetime.max.replace(tzinfo=UTC)


@dataclass(frozen=True)
class CompiledRule:
    """Rule with its pattern compiled for matching."""

    record: EndpointRuleRecord
    pattern: EndpointPattern

    @classmethod
    def from_record(cls, record: EndpointRuleRecord) -> "CompiledRule":
        """Compile a rule record.

        Raises:
            InvalidEndpointPatternError: If the pattern is malformed.
        """
        return cls(record=record, pattern=EndpointPattern.compile(record.endpoint_pattern))

    @property
    def rule_id(self) -> uuid.UUID:
        return self.record.rule_id

    @property
    def org_id(self) -> uuid.UUID | None:
        return self.record.org_id

    @property
    def is_active(self) -> bool:
        return self.record.is_active

    @property
    def force_deferred(self) -> bool:
        return self.record.force_deferred

    @property
    def priority(self) -> Priority:
        return self.record.priority

    @property
    def timeout_seconds(self) -> int:
        return self.record.timeout_seconds

    @property
    def result_ttl_seconds(self) -> int | None:
        return self.record.result_ttl_seconds

    def matches(self, method: HttpMethod | str, path: str) -> bool:
        """Check method equality and segment-wise path match."""
        if str(getattr(method, "value", method)).upper() != self.record.http_method.value:
            return False
        return self.pattern.matches(path)


def build_rule(
    *,
    http_method: HttpMethod | str,
    endpoint_pattern: str,
    org_id: uuid.UUID | None = None,
    force_deferred: bool = False,
    priority: Priority | str = Priority.default,
    timeout_seconds: int = 300,
    result_ttl_seconds: int | None = None,
    is_active: bool = True,
    rule_id: uuid.UUID | None = None,
    created_at: datetime | None = None,
) -> CompiledRule:
    """Build and validate a new rule.

    Raises:
        InvalidEndpointPatternError: If the pattern is malformed.
        ValueError: If method, priority or timeout is invalid.
    """
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive")
    if result_ttl_seconds is not None and result_ttl_seconds <= 0:
        raise ValueError("result_ttl_seconds must be positive")

    record = EndpointRuleRecord(
        rule_id=rule_id or uuid.uuid4(),
        org_id=org_id,
        http_method=HttpMethod(str(getattr(http_method, "value", http_method)).upper()),
        endpoint_pattern=endpoint_pattern,
        is_active=is_active,
        force_deferred=force_deferred,
        priority=Priority(priority),
        timeout_seconds=timeout_seconds,
        result_ttl_seconds=result_ttl_seconds,
        created_at=created_at or utcnow(),
    )
    return CompiledRule.from_record(record)


async def create_rule(repository: EndpointRuleRepository, **fields: Any) -> CompiledRule:
    """Validate a rule and persist it.

    Invalid patterns are rejected here so they never reach request matching.

    Raises:
        InvalidEndpointPatternError: If the pattern is malformed.
    """
    rule = build_rule(**fields)
    await repository.add_rule(rule.record)
    logger.info(
        "Deferred endpoint rule created",
        extra={
            "structured": {
                "rule_id": str(rule.rule_id),
                "org_id": str(rule.org_id) if rule.org_id else None,
                "http_method": rule.record.http_method.value,
                "endpoint_pattern": rule.record.endpoint_pattern,
                "force_deferred": rule.force_deferred,
            }
        },
    )
    return rule


def load_static_rules(settings: Settings) -> list[CompiledRule]:
    """Compile the global rules declared in ``deferred_endpoints``.

    Each entry is a mapping with ``method`` and ``pattern`` and optional
    ``force``, ``priority``, ``timeout`` and ``result_ttl``.

    Raises:
        InvalidEndpointPatternError: If any configured pattern is malformed.
        ValueError: If an entry is missing required keys.
    """
    rules: list[CompiledRule] = []
    for index, entry in enumerate(settings.deferred_endpoints):
        if "method" not in entry or "pattern" not in entry:
            raise ValueError(f"deferred_endpoints[{index}] requires 'method' and 'pattern'")

        rules.append(
            build_rule(
                http_method=entry["method"],
                endpoint_pattern=entry["pattern"],
                force_deferred=bool(entry.get("force", False)),
                priority=entry.get("priority", settings.deferred_default_priority),
                timeout_seconds=int(
                    entry.get("timeout", settings.deferred_default_timeout_seconds)
                ),
                result_ttl_seconds=entry.get("result_ttl"),
                # Deterministic ids keep ordering stable across restarts
                rule_id=uuid.uuid5(uuid.NAMESPACE_URL, f"deferred-static/{index}"),
                created_at=_STATIC_CREATED_AT,
            )
        )
    return rules


def order_rules(rules: list[CompiledRule], org_id: uuid.UUID | None) -> list[CompiledRule]:
    """Return the rules visible to an organization in precedence order.

    Organization-specific rules come first, then global rules; within each
    group, creation order with rule_id breaking ties.
    """
    def key(rule: CompiledRule) -> tuple[datetime, str]:
        return (rule.record.created_at, str(rule.rule_id))

    own = sorted((r for r in rules if org_id is not None and r.org_id == org_id), key=key)
    shared = sorted((r for r in rules if r.org_id is None), key=key)
    return own + shared


class RuleCache:
    """Active rules held in memory and refreshed from the repository.

    A refresh that hits a malformed persisted pattern logs and skips that
    rule; static rules were already validated at startup.
    """

    def __init__(
        self,
        repository: EndpointRuleRepository,
        static_rules: list[CompiledRule] | None = None,
        ttl_seconds: float = 30,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._repository = repository
        self._static_rules = list(static_rules or [])
        self._ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._persisted: list[CompiledRule] = []
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    async def rules_for(self, org_id: uuid.UUID | None) -> list[CompiledRule]:
        """Active rules for an organization in precedence order."""
        await self._refresh_if_stale()
        persisted = order_rules(self._persisted, org_id)
        return persisted + self._static_rules

    def invalidate(self) -> None:
        """Force a reload on next lookup."""
        self._loaded_at = None

    async def _refresh_if_stale(self) -> None:
        if self._is_fresh():
            return

        async with self._lock:
            if self._is_fresh():
                return

            records = await self._repository.list_active_rules()
            compiled: list[CompiledRule] = []
            for record in records:
                try:
                    compiled.append(CompiledRule.from_record(record))
                except InvalidEndpointPatternError as e:
                    logger.error(
                        "Skipping deferred rule with invalid pattern",
                        extra={
                            "structured": {
                                "rule_id": str(record.rule_id),
                                "endpoint_pattern": record.endpoint_pattern,
                                "reason": e.reason,
                            }
                        },
                    )

            self._persisted = compiled
            self._loaded_at = self._clock()

    def _is_fresh(self) -> bool:
        if self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self._ttl_seconds
