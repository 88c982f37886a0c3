"""Unit tests for the deferral decision and rule precedence."""

import uuid
from datetime import UTC, datetime, timedelta

from backend.app.deferred.decision import RequestDescriptor, decide, select_rule
from backend.app.deferred.rules import build_rule, order_rules


def _descriptor(**overrides: object) -> RequestDescriptor:
    fields: dict[str, object] = {
        "method": "POST",
        "path": "/api/v1/reports/generate",
        "has_defer_header": True,
        "is_deferred_replay": False,
        "is_authenticated": True,
    }
    fields.update(overrides)
    return RequestDescriptor(**fields)  # type: ignore[arg-type]


def test_replay_is_never_deferred() -> None:
    rule = build_rule(
        http_method="POST", endpoint_pattern="api/v1/reports/generate", force_deferred=True
    )

    decision = decide(_descriptor(is_deferred_replay=True), [rule])

    assert decision.defer is False
    assert decision.reason == "replay"


def test_unauthenticated_is_never_deferred() -> None:
    rule = build_rule(
        http_method="POST", endpoint_pattern="api/v1/reports/generate", force_deferred=True
    )

    decision = decide(_descriptor(is_authenticated=False), [rule])

    assert decision.defer is False


def test_opt_in_header_defers_matching_rule() -> None:
    rule = build_rule(http_method="POST", endpoint_pattern="api/v1/reports/generate")

    assert decide(_descriptor(), [rule]).defer is True
    assert decide(_descriptor(has_defer_header=False), [rule]).defer is False


def test_force_deferred_ignores_header() -> None:
    rule = build_rule(http_method="POST", endpoint_pattern="api/v1/reports/*", force_deferred=True)

    decision = decide(_descriptor(has_defer_header=False), [rule])

    assert decision.defer is True
    assert decision.rule is rule
    assert decision.reason == "forced"


def test_method_must_match() -> None:
    rule = build_rule(http_method="GET", endpoint_pattern="api/v1/reports/generate")

    decision = decide(_descriptor(), [rule])

    assert decision.defer is False
    assert decision.reason == "no_rule"


def test_inactive_rules_are_skipped() -> None:
    inactive = build_rule(
        http_method="POST", endpoint_pattern="api/v1/reports/generate", is_active=False
    )

    assert select_rule(_descriptor(), [inactive]) is None


def test_org_rule_wins_over_global_rule() -> None:
    org_id = uuid.uuid4()
    earlier = datetime(2024, 1, 1, tzinfo=UTC)

    global_rule = build_rule(
        http_method="POST",
        endpoint_pattern="api/v1/reports/*",
        force_deferred=False,
        created_at=earlier,
    )
    org_rule = build_rule(
        http_method="POST",
        endpoint_pattern="api/v1/reports/*",
        org_id=org_id,
        force_deferred=True,
        created_at=earlier + timedelta(days=30),
    )

    ordered = order_rules([global_rule, org_rule], org_id)
    decision = decide(_descriptor(has_defer_header=False), ordered)

    assert ordered == [org_rule, global_rule]
    assert decision.rule is org_rule
    assert decision.defer is True


def test_creation_order_then_rule_id_breaks_ties() -> None:
    created = datetime(2024, 1, 1, tzinfo=UTC)
    first = build_rule(
        http_method="POST",
        endpoint_pattern="api/v1/reports/*",
        rule_id=uuid.UUID("00000000-0000-0000-0000-00000000000a"),
        created_at=created,
    )
    second = build_rule(
        http_method="POST",
        endpoint_pattern="api/v1/reports/*",
        rule_id=uuid.UUID("00000000-0000-0000-0000-00000000000b"),
        created_at=created,
    )
    older = build_rule(
        http_method="POST",
        endpoint_pattern="api/v1/*/generate",
        created_at=created - timedelta(seconds=1),
    )

    assert order_rules([second, first, older], None) == [older, first, second]


def test_other_org_rules_are_invisible() -> None:
    rule = build_rule(
        http_method="POST", endpoint_pattern="api/v1/reports/generate", org_id=uuid.uuid4()
    )

    assert order_rules([rule], uuid.uuid4()) == []
    assert order_rules([rule], None) == []
