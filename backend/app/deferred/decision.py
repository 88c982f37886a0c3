"""Deferral decision - whether an inbound request becomes a deferred request."""

from collections.abc import Iterable
from dataclasses import dataclass

from backend.app.deferred.rules import CompiledRule


@dataclass(frozen=True)
class RequestDescriptor:
    """What the decision needs to know about an inbound request."""

    method: str
    path: str
    has_defer_header: bool = False
    is_deferred_replay: bool = False
    is_authenticated: bool = False


@dataclass(frozen=True)
class Decision:
    """Outcome of the deferral decision."""

    defer: bool
    rule: CompiledRule | None = None
    reason: str = ""


def select_rule(
    descriptor: RequestDescriptor, rules: Iterable[CompiledRule]
) -> CompiledRule | None:
    """First active rule matching method and path, in the given order."""
    for rule in rules:
        if rule.is_active and rule.matches(descriptor.method, descriptor.path):
            return rule
    return None


def decide(descriptor: RequestDescriptor, rules: Iterable[CompiledRule]) -> Decision:
    """Decide whether to defer a request.

    Args:
        descriptor: Inbound request facts
        rules: Candidate rules in precedence order

    Returns:
        Decision with the matched rule (if any)
    """
    # A replay must execute synchronously or it would defer itself forever
    if descriptor.is_deferred_replay:
        return Decision(defer=False, reason="replay")

    if not descriptor.is_authenticated:
        return Decision(defer=False, reason="unauthenticated")

    rule = select_rule(descriptor, rules)
    if rule is None:
        return Decision(defer=False, reason="no_rule")

    if rule.force_deferred:
        return Decision(defer=True, rule=rule, reason="forced")

    if descriptor.has_defer_header:
        return Decision(defer=True, rule=rule, reason="opt_in")

    return Decision(defer=False, rule=rule, reason="no_opt_in")
