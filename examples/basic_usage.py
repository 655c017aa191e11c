#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the engine components directly:

* load settings from `.env`
* register an action handler
* deploy an approval process with an exclusive gateway
* start an execution and run its tasks to completion

The order amount is passed as an argument.
"""

from __future__ import annotations

import argparse
from typing import Any, Sequence

from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.definitions.registry import parse_definition
from bpm_orchestrator.errors import ValidationError
from bpm_orchestrator.handlers import TaskInput
from bpm_orchestrator.logging import configure_logging
from bpm_orchestrator.runtime import AutomationEngine

APPROVAL = {
    "id": "order-approval",
    "name": "Order approval",
    "nodes": [
        {"id": "start", "kind": "start"},
        {"id": "route", "kind": "gateway_xor"},
        {
            "id": "manager",
            "kind": "task",
            "label": "Manager sign-off",
            "config": {"action": "example.approve"},
        },
        {
            "id": "auto",
            "kind": "task",
            "label": "Auto approve",
            "config": {"action": "example.approve"},
        },
        {"id": "end", "kind": "end"},
    ],
    "edges": [
        {"id": "e1", "source": "start", "target": "route"},
        {"id": "e2", "source": "route", "target": "manager", "condition": "amount > 1000"},
        {"id": "e3", "source": "route", "target": "auto"},
        {"id": "e4", "source": "manager", "target": "end"},
        {"id": "e5", "source": "auto", "target": "end"},
    ],
}


def approve(task_input: TaskInput) -> dict[str, Any]:
    print(f"Approving order for {task_input.payload.get('amount')} ({task_input.task_name})")
    return {"approved": True}


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an order approval workflow.")
    parser.add_argument("--amount", type=float, required=True, help="Order amount")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = OrchestratorSettings()
    configure_logging(settings.log_level)

    engine = AutomationEngine(settings)
    engine.handlers.register("example.approve", approve, replace=True)

    try:
        definition = engine.definitions.create(parse_definition(APPROVAL))
    except ValidationError:
        # Already stored by an earlier run.
        definition = engine.definitions.get(APPROVAL["id"])
    engine.definitions.activate(definition.id, definition.version)

    execution = engine.workflows.execute_workflow(definition.id, {"amount": args.amount})
    engine.run_pending()
    execution = engine.workflows.get_execution(execution.id)

    print(f"Execution {execution.id}: {execution.status.value}")
    path = dict.fromkeys(entry.node_id for entry in execution.execution_log)
    print("Path: " + " -> ".join(path))
    print(f"Persisted to: {settings.state_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
