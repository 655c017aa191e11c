from bpm_orchestrator.definitions.models import (
    EscalationRule,
    NodeKind,
    ProcessDefinition,
    ProcessEdge,
    ProcessNode,
    SLAConfig,
    TaskNodeConfig,
)
from bpm_orchestrator.definitions.registry import (
    DefinitionStore,
    load_definition_file,
    parse_definition,
)
from bpm_orchestrator.definitions.validator import ValidationReport, validate

__all__ = [
    "DefinitionStore",
    "EscalationRule",
    "NodeKind",
    "ProcessDefinition",
    "ProcessEdge",
    "ProcessNode",
    "SLAConfig",
    "TaskNodeConfig",
    "ValidationReport",
    "load_definition_file",
    "parse_definition",
    "validate",
]
