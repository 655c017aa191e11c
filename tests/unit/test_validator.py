"""Structural validation of process graphs."""

from __future__ import annotations

from typing import Any

from bpm_orchestrator.definitions.models import ProcessDefinition
from bpm_orchestrator.definitions.validator import validate


def _definition(
    nodes: list[tuple[str, str]], edges: list[tuple], **extra: Any
) -> ProcessDefinition:
    raw_edges = []
    for index, edge in enumerate(edges):
        source, target, *rest = edge
        raw_edges.append(
            {
                "id": f"e{index}",
                "source": source,
                "target": target,
                "condition": rest[0] if rest else None,
            }
        )
    return ProcessDefinition.model_validate(
        {
            "id": "p",
            "name": "P",
            "nodes": [{"id": n, "kind": k} for n, k in nodes],
            "edges": raw_edges,
            **extra,
        }
    )


def _codes(definition: ProcessDefinition) -> set[str]:
    return {issue.code for issue in validate(definition).issues}


def test_linear_definition_is_valid() -> None:
    d = _definition(
        [("s", "start"), ("t", "task"), ("e", "end")],
        [("s", "t"), ("t", "e")],
    )
    report = validate(d)
    assert report.ok
    assert report.issues == []


def test_start_and_end_are_required() -> None:
    d = _definition([("t", "task")], [])
    codes = _codes(d)
    assert {"start_count", "no_end"} <= codes
    assert not validate(d).ok


def test_dangling_edge_and_bad_condition() -> None:
    d = _definition(
        [("s", "start"), ("t", "task"), ("e", "end")],
        [("s", "t"), ("t", "e", "amount >"), ("t", "ghost")],
    )
    codes = _codes(d)
    assert "dangling_edge" in codes
    assert "bad_condition" in codes


def test_duplicate_ids() -> None:
    d = _definition(
        [("s", "start"), ("t", "task"), ("t", "task"), ("e", "end")],
        [("s", "t"), ("t", "e")],
    )
    assert "duplicate_node" in _codes(d)


def test_gateway_must_split_or_join() -> None:
    d = _definition(
        [("s", "start"), ("g", "gateway_xor"), ("e", "end")],
        [("s", "g"), ("g", "e")],
    )
    assert "gateway_split" in _codes(d)


def test_xor_with_two_defaults_is_an_error_and_no_default_a_warning() -> None:
    two_defaults = _definition(
        [("s", "start"), ("g", "gateway_xor"), ("a", "task"), ("b", "task"), ("e", "end")],
        [("s", "g"), ("g", "a"), ("g", "b"), ("a", "e"), ("b", "e")],
    )
    assert "xor_defaults" in _codes(two_defaults)

    no_default = _definition(
        [("s", "start"), ("g", "gateway_xor"), ("a", "task"), ("b", "task"), ("e", "end")],
        [("s", "g"), ("g", "a", "x > 1"), ("g", "b", "x <= 1"), ("a", "e"), ("b", "e")],
    )
    report = validate(no_default)
    assert report.ok
    assert [w.code for w in report.warnings] == ["xor_no_default"]


def test_unreachable_end_is_an_error() -> None:
    d = _definition(
        [("s", "start"), ("t", "task"), ("e", "end"), ("t2", "task"), ("e2", "end")],
        [("s", "t"), ("t", "e"), ("t2", "e2")],
    )
    codes = _codes(d)
    assert "end_unreachable" in codes
    assert "no_incoming" in codes


def test_cycle_without_gateway_is_an_error() -> None:
    d = _definition(
        [("s", "start"), ("a", "task"), ("b", "task"), ("e", "end")],
        [("s", "a"), ("a", "b"), ("b", "a"), ("b", "e")],
    )
    assert "cycle" in _codes(d)


def test_loop_through_gateway_is_only_a_warning() -> None:
    d = _definition(
        [("s", "start"), ("a", "task"), ("g", "gateway_xor"), ("e", "end")],
        [("s", "a"), ("a", "g"), ("g", "a", "retry == true"), ("g", "e")],
    )
    report = validate(d)
    assert report.ok
    assert "gateway_cycle" in {w.code for w in report.warnings}


def test_sla_config_checks() -> None:
    d = _definition(
        [("s", "start"), ("t", "task"), ("e", "end")],
        [("s", "t"), ("t", "e")],
        sla_config={
            "t": {"max_duration_hours": -1},
            "ghost": {"max_duration_hours": 1},
        },
        escalation_rules=[{"node_id": "t", "escalate_to": []}],
    )
    codes = _codes(d)
    assert {"sla_negative", "sla_unknown_node", "escalation_target"} <= codes


def test_report_json_shape() -> None:
    d = _definition([("s", "start")], [])
    payload = validate(d).to_json()
    assert payload["ok"] is False
    assert all({"code", "message", "severity"} <= set(e) for e in payload["errors"])
