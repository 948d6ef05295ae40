"""Command line entry point for the compute share worker."""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
import time
from typing import Any, Dict, List, Optional

from .config import Settings, load_settings, load_version, persist_settings
from .coordinator import CoordinatorClient
from .errors import CoordinatorError
from .identity import FileKeyStore, IdentityManager
from .logs import log, setup_logging, warn
from .schemas import Task
from .seer import local_fate
from .worker import NO_TASK, SUBMITTED, ClaimCycle, CycleOutcome, Refresher


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _task_summary(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "operation": task.operation,
        "input": task.input,
        "kind": task.kind,
        "price": task.price,
        "completed": task.completed,
        "verified": task.verified,
        "assigned_to": task.assigned_to,
        "remaining_slots": task.remaining_slots,
    }


def _outcome_summary(outcome: CycleOutcome) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"status": outcome.status}
    if outcome.task is not None:
        summary["task"] = outcome.task.id
        summary["operation"] = outcome.task.operation
    if outcome.evaluation is not None:
        summary["output"] = outcome.evaluation.output
        if outcome.evaluation.metadata:
            summary["metadata"] = outcome.evaluation.metadata
    if outcome.error is not None:
        summary["error"] = str(outcome.error)
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="computeshare-worker", description="Compute share worker client")
    parser.add_argument("--server", help="Coordinator URL (overrides SERVER_URL)")
    parser.add_argument("--worker", help="Worker id (overrides WORKER_NAME)")
    parser.add_argument("--timeout", type=float, help="Request timeout in seconds")
    parser.add_argument("--save", action="store_true", help="Write --server/--worker to the .env file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {load_version()}")
    sub = parser.add_subparsers(dest="command", required=True)

    work = sub.add_parser("work", help="Claim and compute tasks until interrupted")
    work.add_argument("--max-cycles", type=int, default=0, help="Stop after this many cycles (0 = forever)")
    work.add_argument("--no-refresh", action="store_true", help="Do not start the balance refresher")

    sub.add_parser("claim", help="Run a single claim cycle")

    predict = sub.add_parser("predict", help="Ask the seer for a prediction")
    predict.add_argument("--age", type=float, required=True)
    predict.add_argument("--city", default="")
    predict.add_argument("--country", default="")
    predict.add_argument("--tags", default="", help="Free text, e.g. 'smoker, athlete'")
    predict.add_argument("--offline", action="store_true", help="Use the local model only")

    sub.add_parser("balance", help="Show trust and token balance")
    sub.add_parser("overview", help="List tasks known to the coordinator")

    create = sub.add_parser("create-task", help="Queue a new task")
    create.add_argument("operation")
    create.add_argument("--input", dest="input_value", type=float, default=0.0)
    create.add_argument("--price", type=int, default=0)
    create.add_argument("--payload", help="JSON object passed to the task")
    create.add_argument("--source", help="Script source for script_eval tasks, e.g. 'print(1+2)'")
    create.add_argument("--kind")

    sub.add_parser("seed", help="Ask the coordinator to generate sample tasks")
    sub.add_parser("identity", help="Show the worker id and public key")
    return parser


def resolve_settings(args: argparse.Namespace) -> Settings:
    settings = load_settings()
    overrides: Dict[str, Any] = {}
    if args.server:
        overrides["server_url"] = args.server.rstrip("/")
    if args.worker:
        overrides["worker_name"] = args.worker
    if args.timeout is not None and args.timeout > 0:
        overrides["request_timeout"] = args.timeout
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    return settings


def run_work(client: CoordinatorClient, identity: IdentityManager, settings: Settings, args: argparse.Namespace) -> int:
    client.fetch_remote_model()
    refresher: Optional[Refresher] = None
    if not args.no_refresh:
        refresher = Refresher(client, settings.worker_name, settings.refresh_interval)
        refresher.start()
    cycle = ClaimCycle(client, identity, settings.worker_name)
    completed = 0
    try:
        while not args.max_cycles or completed < args.max_cycles:
            outcome = cycle.run()
            completed += 1
            if outcome.status != SUBMITTED and (not args.max_cycles or completed < args.max_cycles):
                time.sleep(settings.poll_interval)
    except KeyboardInterrupt:
        log("Stopping worker", prefix="👋", worker=settings.worker_name)
    finally:
        if refresher is not None:
            refresher.stop(timeout=1.0)
    return 0


def run_command(args: argparse.Namespace, settings: Settings, client: CoordinatorClient, identity: IdentityManager) -> int:
    command = args.command
    if command == "work":
        return run_work(client, identity, settings, args)
    if command == "claim":
        outcome = ClaimCycle(client, identity, settings.worker_name).run()
        _print(_outcome_summary(outcome))
        return 0 if outcome.status in (SUBMITTED, NO_TASK) else 1
    if command == "predict":
        if args.offline:
            fate = local_fate(args.age, args.city, args.country, args.tags)
        else:
            client.fetch_remote_model()
            fate = client.predict(args.age, args.city, args.country, args.tags)
        _print(dataclasses.asdict(fate))
        return 0
    if command == "balance":
        _print(dataclasses.asdict(client.fetch_balance(settings.worker_name)))
        return 0
    if command == "overview":
        _print([_task_summary(task) for task in client.fetch_overview()])
        return 0
    if command == "create-task":
        payload: Dict[str, Any] = {}
        if args.payload:
            try:
                payload = json.loads(args.payload)
            except ValueError as exc:
                raise SystemExit(f"--payload is not valid JSON: {exc}")
            if not isinstance(payload, dict):
                raise SystemExit("--payload must be a JSON object")
        if args.source:
            payload["source"] = args.source
        _print(
            client.create_task(
                args.operation,
                args.input_value,
                price=args.price,
                payload=payload,
                kind=args.kind,
            )
        )
        return 0
    if command == "seed":
        client.generate_tasks()
        return 0
    if command == "identity":
        _print(
            {
                "worker": settings.worker_name,
                "public_key": identity.public_key_b64,
                "server": client.api_base,
                "home": str(settings.home),
            }
        )
        return 0
    raise SystemExit(f"Unknown command {command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = resolve_settings(args)
    setup_logging(settings.logs_dir)
    if args.save:
        persist_settings(settings)
        log(f"Saved settings to {settings.env_path}", prefix="💾")
    log(f"Worker: {settings.worker_name} · Coordinator: {settings.server_url} · Version: {load_version()}")
    client = CoordinatorClient(settings.server_url, timeout=settings.request_timeout)
    identity = IdentityManager(FileKeyStore(settings.keys_dir))
    try:
        return run_command(args, settings, client, identity)
    except CoordinatorError as exc:
        warn(f"{args.command} failed: {exc}", operation=exc.operation)
        return 1
    except ValueError as exc:
        warn(f"{args.command} failed: {exc}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
