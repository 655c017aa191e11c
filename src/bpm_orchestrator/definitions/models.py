from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from bpm_orchestrator.store import StoredRecord, utc_now
from bpm_orchestrator.tasks.models import TaskPriority


class NodeKind(str, Enum):
    START = "start"
    END = "end"
    TASK = "task"
    GATEWAY_XOR = "gateway_xor"
    GATEWAY_AND = "gateway_and"
    GATEWAY_OR = "gateway_or"

    @property
    def is_gateway(self) -> bool:
        return self in (NodeKind.GATEWAY_XOR, NodeKind.GATEWAY_AND, NodeKind.GATEWAY_OR)


class TaskNodeConfig(BaseModel):
    """Configuration of a ``task`` node.

    Unknown keys are preserved so UIs can stash their own metadata.
    """

    model_config = ConfigDict(extra="allow")

    action: str = "noop"
    sla_hours: float | None = None
    escalation_hours: float | None = None
    auto_advance: bool = True
    warning_at_percent: float | None = None
    queue_name: str = "default"
    priority: TaskPriority = TaskPriority.MEDIUM
    max_retries: int | None = None
    timeout_seconds: float | None = None
    input: dict[str, Any] = Field(default_factory=dict)


class ProcessNode(BaseModel):
    id: str
    kind: NodeKind
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)

    def task_config(self) -> TaskNodeConfig:
        return TaskNodeConfig.model_validate(self.config)


class ProcessEdge(BaseModel):
    id: str
    source: str
    target: str
    label: str | None = None
    condition: str | None = None

    @property
    def is_conditional(self) -> bool:
        return bool(self.condition and self.condition.strip())


class SLAConfig(BaseModel):
    max_duration_hours: float
    warning_at_percent: float | None = None
    escalate_after_hours: float | None = None


class EscalationRule(BaseModel):
    condition: str = "sla_breach"
    node_id: str | None = None
    escalate_to: list[str] = Field(default_factory=list)
    notify_via: list[str] = Field(default_factory=lambda: ["log"])

    def matches(self, node_id: str) -> bool:
        return self.node_id is None or self.node_id == node_id


class ProcessDefinition(StoredRecord):
    """A versioned process graph.

    ``(id, version)`` identifies one immutable revision once it has been
    activated; at most one version of an id is active at a time.
    """

    id: str
    version: int = 1
    name: str
    entity_type: str = ""
    description: str = ""
    nodes: list[ProcessNode] = Field(default_factory=list)
    edges: list[ProcessEdge] = Field(default_factory=list)
    sla_config: dict[str, SLAConfig] = Field(default_factory=dict)
    escalation_rules: list[EscalationRule] = Field(default_factory=list)
    is_active: bool = False
    activated_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return f"{self.id}@{self.version}"

    def node(self, node_id: str) -> ProcessNode | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def outgoing(self, node_id: str) -> list[ProcessEdge]:
        """Outgoing edges in declaration order (XOR evaluation order)."""

        return [e for e in self.edges if e.source == node_id]

    def incoming(self, node_id: str) -> list[ProcessEdge]:
        return [e for e in self.edges if e.target == node_id]

    def start_node(self) -> ProcessNode | None:
        for n in self.nodes:
            if n.kind is NodeKind.START:
                return n
        return None

    def is_join(self, node_id: str) -> bool:
        return len(self.incoming(node_id)) >= 2

    def task_nodes(self) -> list[ProcessNode]:
        return [n for n in self.nodes if n.kind is NodeKind.TASK]

    def sla_for(self, node_id: str) -> SLAConfig | None:
        """SLA of a task node: ``sla_config`` entry first, then node-level hours."""

        if node_id in self.sla_config:
            return self.sla_config[node_id]
        node = self.node(node_id)
        if node is None or node.kind is not NodeKind.TASK:
            return None
        cfg = node.task_config()
        if cfg.sla_hours is None:
            return None
        return SLAConfig(
            max_duration_hours=cfg.sla_hours,
            warning_at_percent=cfg.warning_at_percent,
            escalate_after_hours=cfg.escalation_hours,
        )


def definition_key(definition_id: str, version: int) -> str:
    return f"{definition_id}@{version}"
