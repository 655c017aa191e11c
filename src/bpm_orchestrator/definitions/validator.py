"""Structural validation of process definitions.

``validate`` is pure: it never touches the store and never raises for a bad
graph; every problem becomes a :class:`ValidationIssue` in the report.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field

from bpm_orchestrator.conditions import ConditionEvaluator
from bpm_orchestrator.definitions.models import NodeKind, ProcessDefinition
from bpm_orchestrator.errors import ValidationError, ValidationIssue


@dataclass(slots=True)
class ValidationReport:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if not self.ok:
            raise ValidationError(self.errors)

    def to_json(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "errors": [i.to_json() for i in self.errors],
            "warnings": [i.to_json() for i in self.warnings],
        }


def validate(
    definition: ProcessDefinition, evaluator: ConditionEvaluator | None = None
) -> ValidationReport:
    evaluator = evaluator or ConditionEvaluator()
    report = ValidationReport()
    issues = report.issues

    def error(code: str, message: str, **where: str | None) -> None:
        issues.append(ValidationIssue(code=code, message=message, **where))

    def warning(code: str, message: str, **where: str | None) -> None:
        issues.append(ValidationIssue(code=code, message=message, severity="warning", **where))

    node_counts = Counter(n.id for n in definition.nodes)
    for node_id, count in node_counts.items():
        if count > 1:
            error("duplicate_node", f"node id {node_id!r} is used {count} times", node_id=node_id)
    edge_counts = Counter(e.id for e in definition.edges)
    for edge_id, count in edge_counts.items():
        if count > 1:
            error("duplicate_edge", f"edge id {edge_id!r} is used {count} times", edge_id=edge_id)

    nodes = {n.id: n for n in definition.nodes}
    starts = [n for n in definition.nodes if n.kind is NodeKind.START]
    ends = [n for n in definition.nodes if n.kind is NodeKind.END]

    if len(starts) != 1:
        error("start_count", f"definition must have exactly one start node, found {len(starts)}")
    if not ends:
        error("no_end", "definition must have at least one end node")

    valid_edges = []
    for edge in definition.edges:
        dangling = False
        if edge.source not in nodes:
            error(
                "dangling_edge",
                f"edge {edge.id!r} references unknown source {edge.source!r}",
                edge_id=edge.id,
            )
            dangling = True
        if edge.target not in nodes:
            error(
                "dangling_edge",
                f"edge {edge.id!r} references unknown target {edge.target!r}",
                edge_id=edge.id,
            )
            dangling = True
        if edge.condition is not None:
            problem = evaluator.check_syntax(edge.condition)
            if problem:
                error("bad_condition", f"edge {edge.id!r}: {problem}", edge_id=edge.id)
        if not dangling:
            valid_edges.append(edge)

    incoming: dict[str, list] = {node_id: [] for node_id in nodes}
    outgoing: dict[str, list] = {node_id: [] for node_id in nodes}
    for edge in valid_edges:
        outgoing[edge.source].append(edge)
        incoming[edge.target].append(edge)

    for node_id, node in nodes.items():
        n_in = len(incoming[node_id])
        n_out = len(outgoing[node_id])
        if node.kind is NodeKind.START:
            if n_in:
                error("start_incoming", "start node must not have incoming edges", node_id=node_id)
            if not n_out:
                error("start_outgoing", "start node needs an outgoing edge", node_id=node_id)
            continue
        if node.kind is NodeKind.END:
            if n_out:
                error("end_outgoing", "end node must not have outgoing edges", node_id=node_id)
            if not n_in:
                error("no_incoming", f"end node {node_id!r} has no incoming edge", node_id=node_id)
            continue

        if not n_in:
            error("no_incoming", f"node {node_id!r} has no incoming edge", node_id=node_id)
        if not n_out:
            error("no_outgoing", f"node {node_id!r} has no outgoing edge", node_id=node_id)

        if node.kind.is_gateway:
            # A gateway that joins branches may continue on a single edge.
            if n_in < 2 and n_out < 2:
                error(
                    "gateway_split",
                    f"gateway {node_id!r} must split into at least two edges or join two",
                    node_id=node_id,
                )
            if node.kind is NodeKind.GATEWAY_XOR and n_out >= 2:
                defaults = [e for e in outgoing[node_id] if not e.is_conditional]
                if len(defaults) > 1:
                    error(
                        "xor_defaults",
                        f"exclusive gateway {node_id!r} has {len(defaults)} unconditioned edges",
                        node_id=node_id,
                    )
                elif not defaults:
                    warning(
                        "xor_no_default",
                        f"exclusive gateway {node_id!r} has no default edge",
                        node_id=node_id,
                    )

        if node.kind is NodeKind.TASK:
            cfg = node.config
            for key in ("sla_hours", "escalation_hours"):
                value = cfg.get(key)
                if isinstance(value, (int, float)) and value < 0:
                    error("sla_negative", f"{key} of {node_id!r} is negative", node_id=node_id)
            pct = cfg.get("warning_at_percent")
            if isinstance(pct, (int, float)) and not 0 < pct <= 100:
                error(
                    "warning_percent",
                    f"warning_at_percent of {node_id!r} must be in (0, 100]",
                    node_id=node_id,
                )

    for node_id, sla in definition.sla_config.items():
        if node_id not in nodes:
            error("sla_unknown_node", f"sla_config references unknown node {node_id!r}")
            continue
        if sla.max_duration_hours < 0 or (sla.escalate_after_hours or 0) < 0:
            error("sla_negative", f"SLA hours of {node_id!r} are negative", node_id=node_id)
        if sla.warning_at_percent is not None and not 0 < sla.warning_at_percent <= 100:
            error(
                "warning_percent",
                f"warning_at_percent of {node_id!r} must be in (0, 100]",
                node_id=node_id,
            )

    for index, rule in enumerate(definition.escalation_rules):
        if rule.node_id is None:
            continue
        if rule.node_id not in nodes:
            error(
                "escalation_unknown_node",
                f"escalation rule #{index} references unknown node {rule.node_id!r}",
            )
        elif not rule.escalate_to:
            error(
                "escalation_target",
                f"escalation rule #{index} for {rule.node_id!r} has no escalate_to",
                node_id=rule.node_id,
            )

    if len(starts) == 1:
        reachable = _reachable(starts[0].id, outgoing)
        for end in ends:
            if end.id not in reachable:
                error("end_unreachable", f"end node {end.id!r} is unreachable", node_id=end.id)
        for node_id, node in nodes.items():
            if node_id not in reachable and node.kind is not NodeKind.END:
                warning("unreachable", f"node {node_id!r} is unreachable", node_id=node_id)

    for component in _cycles(nodes.keys(), outgoing):
        names = ", ".join(sorted(component))
        if any(nodes[n].kind.is_gateway for n in component):
            warning("gateway_cycle", f"loop through gateway: {names}")
        else:
            error("cycle", f"cycle without a gateway: {names}")

    return report


def _reachable(start: str, outgoing: dict[str, list]) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for edge in outgoing.get(current, []):
            if edge.target not in seen:
                seen.add(edge.target)
                queue.append(edge.target)
    return seen


def _cycles(node_ids, outgoing: dict[str, list]) -> list[set[str]]:
    """Strongly connected components that contain a cycle (Tarjan, iterative)."""

    index_of: dict[str, int] = {}
    low: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    result: list[set[str]] = []
    counter = 0

    for root in node_ids:
        if root in index_of:
            continue
        work = [(root, 0)]
        while work:
            node, child_index = work[-1]
            if child_index == 0:
                index_of[node] = low[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            targets = [e.target for e in outgoing.get(node, [])]
            if child_index < len(targets):
                work[-1] = (node, child_index + 1)
                target = targets[child_index]
                if target not in index_of:
                    work.append((target, 0))
                elif target in on_stack:
                    low[node] = min(low[node], index_of[target])
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index_of[node]:
                component: set[str] = set()
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.add(member)
                    if member == node:
                        break
                self_loop = any(e.target == node for e in outgoing.get(node, []))
                if len(component) > 1 or self_loop:
                    result.append(component)
    return result
