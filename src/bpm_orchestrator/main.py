"""CLI entrypoint for the automation engine.

Every command works against the local state directory configured by
``ORCHESTRATOR_STATE_PATH``; ``run`` and ``serve`` keep the background drivers
alive until interrupted.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from bpm_orchestrator import __version__
from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.definitions.registry import load_definition_file
from bpm_orchestrator.definitions.validator import validate
from bpm_orchestrator.errors import OrchestratorError
from bpm_orchestrator.errors import ValidationError as DefinitionError
from bpm_orchestrator.events.models import EventDefinition
from bpm_orchestrator.logging import configure_logging
from bpm_orchestrator.runtime import AutomationEngine
from bpm_orchestrator.scheduler.models import ScheduledJob

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _json_object(value: str) -> dict[str, Any]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return parsed


def _load_model(path: Path, model: type[ModelT]) -> ModelT:
    try:
        return model.model_validate_json(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise DefinitionError(f"cannot read {path}: {e}") from e
    except ValidationError as e:
        raise DefinitionError(f"{path}: {e}") from e


def _print_json(value: Any) -> None:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    print(json.dumps(value, indent=2, sort_keys=True, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bpm-orchestrator",
        description="Business-process automation and task orchestration engine",
    )
    parser.add_argument("--version", action="version", version=f"bpm-orchestrator {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_cmd = subparsers.add_parser(
        "validate", help="Validate a process definition file without storing it"
    )
    validate_cmd.add_argument("path", type=Path, help="Path to a definition JSON file")

    load = subparsers.add_parser("load-definition", help="Store a process definition")
    load.add_argument("path", type=Path, help="Path to a definition JSON file")
    load.add_argument(
        "--activate", action="store_true", help="Activate the definition after storing it"
    )

    start = subparsers.add_parser("start-workflow", help="Start an execution of a definition")
    start.add_argument("definition_id")
    start.add_argument("--input", type=_json_object, default=None, help="Input data (JSON)")
    start.add_argument("--idempotency-key", default=None)
    start.add_argument(
        "--drain", action="store_true", help="Run ready tasks until the queue is empty"
    )

    complete = subparsers.add_parser("complete-step", help="Complete a manual workflow step")
    complete.add_argument("execution_id")
    complete.add_argument("node_id")
    complete.add_argument("--output", type=_json_object, default=None, help="Step output (JSON)")

    cancel = subparsers.add_parser("cancel-workflow", help="Cancel a running execution")
    cancel.add_argument("execution_id")
    cancel.add_argument("--reason", default=None)

    register_event = subparsers.add_parser(
        "register-event", help="Register an event definition from a JSON file"
    )
    register_event.add_argument("path", type=Path)

    publish = subparsers.add_parser("publish-event", help="Publish an event")
    publish.add_argument("event_name")
    publish.add_argument("--payload", type=_json_object, default=None, help="Payload (JSON)")
    publish.add_argument("--source", default=None)
    publish.add_argument("--idempotency-key", default=None)
    publish.add_argument("--drain", action="store_true")

    create_job = subparsers.add_parser("create-job", help="Create a scheduled job from JSON")
    create_job.add_argument("path", type=Path)

    run_job = subparsers.add_parser("run-job", help="Fire a scheduled job immediately")
    run_job.add_argument("job_id")
    run_job.add_argument("--drain", action="store_true")

    tick = subparsers.add_parser(
        "tick", help="Run one scheduler/timeout/SLA pass and then all ready tasks"
    )
    tick.add_argument("--no-drain", action="store_true", help="Do not run ready tasks")

    subparsers.add_parser("run", help="Run workers and background drivers until interrupted")

    serve = subparsers.add_parser("serve", help="Serve the REST API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument(
        "--no-drivers",
        action="store_true",
        help="Serve the API without starting workers and background drivers",
    )

    subparsers.add_parser("overview", help="Print the monitoring overview")

    return parser


def _serve(engine: AutomationEngine, args: argparse.Namespace) -> None:
    import uvicorn

    from bpm_orchestrator.server import create_app

    app = create_app(engine)
    if not args.no_drivers:
        engine.start()
    try:
        uvicorn.run(app, host=args.host, port=args.port)
    finally:
        engine.stop()


def _run_forever(engine: AutomationEngine) -> None:
    engine.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        engine.stop()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            report = validate(load_definition_file(args.path))
            _print_json(report.to_json())
            return 0 if report.ok else 3

        engine = AutomationEngine(settings)

        if args.command == "load-definition":
            definition = engine.definitions.create(load_definition_file(args.path))
            if args.activate:
                definition = engine.definitions.activate(definition.id, definition.version)
            logger.info(
                "Definition stored",
                extra={"definition_id": definition.id, "version": definition.version},
            )
            print(f"Stored {definition.id} v{definition.version} (active={definition.is_active})")
            return 0

        if args.command == "start-workflow":
            execution = engine.workflows.execute_workflow(
                args.definition_id, args.input, idempotency_key=args.idempotency_key
            )
            if args.drain:
                engine.run_pending()
                execution = engine.workflows.get_execution(execution.id)
            _print_json(execution)
            return 0

        if args.command == "complete-step":
            execution = engine.workflows.complete_step(args.execution_id, args.node_id, args.output)
            _print_json(execution)
            return 0

        if args.command == "cancel-workflow":
            execution = engine.workflows.cancel_execution(args.execution_id, args.reason)
            print(f"Execution {execution.id} is {execution.status.value}")
            return 0

        if args.command == "register-event":
            event = engine.events.register_event(_load_model(args.path, EventDefinition))
            print(f"Registered event {event.event_name} ({len(event.handlers)} handlers)")
            return 0

        if args.command == "publish-event":
            processed = engine.events.publish_event(
                args.event_name,
                args.payload,
                source=args.source,
                idempotency_key=args.idempotency_key,
            )
            if args.drain:
                engine.run_pending()
                processed = engine.events.get_event(processed.event_id)
            _print_json(processed)
            return 0

        if args.command == "create-job":
            job = engine.scheduler.create_job(_load_model(args.path, ScheduledJob))
            print(f"Created job {job.id} ({job.name}); next run at {job.next_run_at}")
            return 0

        if args.command == "run-job":
            run = engine.scheduler.run_job_now(args.job_id)
            if args.drain:
                engine.run_pending()
                run = engine.store.job_executions.require(run.id)
            _print_json(run)
            return 0

        if args.command == "tick":
            report = engine.tick(drain=not args.no_drain)
            _print_json(report.to_json())
            return 0

        if args.command == "run":
            _run_forever(engine)
            return 0

        if args.command == "serve":
            _serve(engine, args)
            return 0

        if args.command == "overview":
            _print_json(engine.overview())
            return 0

        parser.error(f"Unknown command: {args.command}")
        return 2
    except DefinitionError as e:
        logger.error("Rejected", extra={"error": str(e)})
        print(f"Rejected: {e}", file=sys.stderr)
        for issue in e.issues:
            print(f"  - [{issue.severity}] {issue.message}", file=sys.stderr)
        return 3
    except OrchestratorError as e:
        logger.error("Command failed", extra={"error": str(e)})
        print(f"Error: {e}", file=sys.stderr)
        return 3
    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
