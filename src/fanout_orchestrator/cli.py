"""Command line entry point: launch, poll, run and resume fan-out executions."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from fanout_orchestrator.config.settings import Settings, get_settings
from fanout_orchestrator.errors import FanoutError, MalformedInputError, SubmissionError
from fanout_orchestrator.reporter import TaskStatusReporter, WorkUnitContext, fetch_task_arn
from fanout_orchestrator.runtime import (
    build_backend,
    build_launcher,
    build_monitor,
    build_orchestrator,
    build_store,
    configure_logging,
)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    if args.command == "serve":
        return _serve(args)

    try:
        result = _dispatch(args, settings)
    except SubmissionError as exc:
        _print_json({"error": str(exc), "submitted_task_ids": exc.submitted_task_ids})
        return 2
    except FanoutError as exc:
        _print_json({"error": f"{type(exc).__name__}: {exc}"})
        return 1
    _print_json(result)
    return 0


def _dispatch(args: argparse.Namespace, settings: Settings) -> Any:
    store = build_store(settings)
    if args.command == "launch":
        launcher = build_launcher(settings, store, build_backend(settings))
        return launcher.launch(_load_json(args.request)).to_dict()
    if args.command == "poll":
        return build_monitor(store).poll(_load_json(args.payload)).to_dict()
    if args.command == "report":
        return _report(args, store)

    orchestrator = build_orchestrator(settings, store, build_backend(settings))
    if args.command == "run":
        record = orchestrator.start(_load_json(args.request), durable=args.durable)
        return record.model_dump(mode="json", by_alias=True)
    records = orchestrator.resume_due()
    return [record.model_dump(mode="json", by_alias=True) for record in records]


def _report(args: argparse.Namespace, store: Any) -> dict[str, Any]:
    context = WorkUnitContext.from_env()
    task_id = args.task_id
    if not task_id and context.metadata_endpoint:
        task_id = fetch_task_arn(context.metadata_endpoint)
    if not task_id:
        raise MalformedInputError("Could not resolve the task id; pass --task-id explicitly.")

    reporter = TaskStatusReporter(store)
    if args.status == "Running":
        reporter.mark_running(context.run_id, task_id, context.task_name)
        status = args.status
    else:
        status = reporter.mark_finished(
            context.run_id,
            task_id,
            succeeded=args.status == "Completed",
        )
    return {"run_id": context.run_id, "task_id": task_id, "status": status}


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("fanout_orchestrator.api.main:app", host=args.host, port=args.port)
    return 0


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="fanout-orchestrator",
        description="Launch a batch of container tasks and monitor it to completion.",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level.")
    commands = parser.add_subparsers(dest="command", required=True)

    launch = commands.add_parser("launch", help="Submit a batch and print the iterator payload.")
    launch.add_argument("request", type=Path, help="Launch request JSON file ('-' for stdin).")

    poll = commands.add_parser("poll", help="Evaluate an iterator payload once.")
    poll.add_argument("payload", type=Path, help="Iterator payload JSON file ('-' for stdin).")

    run = commands.add_parser("run", help="Launch a batch and drive it through the poll loop.")
    run.add_argument("request", type=Path, help="Launch request JSON file ('-' for stdin).")
    run.add_argument(
        "--durable",
        action="store_true",
        help="Stop after the first wait and leave the execution for resume-due.",
    )

    commands.add_parser("resume-due", help="Resume waiting executions that are due.")

    report = commands.add_parser(
        "report", help="Report this work unit's status from inside its container."
    )
    report.add_argument("status", choices=["Running", "Completed", "Failed"])
    report.add_argument(
        "--task-id",
        default=None,
        help="Task id to report for; defaults to the ECS task metadata TaskARN.",
    )

    serve = commands.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser.parse_args(argv)


def _load_json(path: Path) -> Any:
    if str(path) == "-":
        raw = sys.stdin.read()
    else:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise MalformedInputError(f"Cannot read {path}: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedInputError(f"Invalid JSON in {path}: {exc}") from exc


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True))


if __name__ == "__main__":
    raise SystemExit(main())
