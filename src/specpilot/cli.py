"""Command-line entry point for headless automation runs."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path

from .bootstrap import build_engine, build_repository, build_store, configure_logging
from .config import SpecPilotSettings, get_settings
from .engine import AutomationEngine
from .errors import ConfigurationError, StructuralError
from .session import SessionStatus, SessionStore
from .tasks import TaskStatus

logger = logging.getLogger(__name__)


def _settings_for(args: argparse.Namespace) -> SpecPilotSettings:
    settings = get_settings()
    overrides = {}
    if getattr(args, "workspace", None):
        overrides["workspace_root"] = Path(args.workspace).expanduser().resolve()
    if getattr(args, "max_retries", None) is not None:
        overrides["max_retries"] = args.max_retries
    if getattr(args, "skip_optional", False):
        overrides["skip_optional_tasks"] = True
    if getattr(args, "stop_on_failure", False):
        overrides["stop_on_failure"] = True
    return settings.model_copy(update=overrides) if overrides else settings


async def _run(engine: AutomationEngine, store: SessionStore | None, resume: bool) -> int:
    previous = None
    if resume and store is not None:
        previous = store.latest_unfinished(str(engine.repository.root.resolve()))
        if previous is None:
            print("No unfinished session to resume; starting a new one.")

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, lambda: asyncio.ensure_future(engine.stop()))
        except (NotImplementedError, RuntimeError):
            pass

    session = await engine.run(previous)
    print(
        json.dumps(
            {
                "session_id": session.session_id,
                "status": session.status.value,
                "state": engine.state.value,
                "completed": session.completed_task_ids,
                "failed": session.failed_task_ids,
                "skipped": session.skipped_task_ids,
                "last_error": session.last_error,
            },
            indent=2,
        )
    )
    return 0 if session.status is SessionStatus.COMPLETED else 1


def cmd_run(args: argparse.Namespace) -> int:
    settings = _settings_for(args)
    configure_logging(settings.log_level)
    store, storage_metadata = build_store(settings)
    if store is None:
        print(f"Session store unavailable: {storage_metadata['error']}")
    engine = build_engine(settings, store=store)
    return asyncio.run(_run(engine, store, args.resume))


def cmd_tasks(args: argparse.Namespace) -> int:
    settings = _settings_for(args)
    repository = build_repository(settings)
    repository.discover()
    wanted = TaskStatus(args.status) if args.status else None
    tasks = [task for task in repository.tasks() if wanted is None or task.status is wanted]
    if args.json:
        print(json.dumps([task.to_dict() for task in tasks], indent=2))
    else:
        for task in tasks:
            flag = "*" if task.optional else " "
            print(f"{task.qualified_id:<30} [{task.status.value:<11}]{flag} {task.title}")
    for error in repository.errors:
        print(f"error: {error}")
    return 1 if repository.errors else 0


def cmd_next(args: argparse.Namespace) -> int:
    settings = _settings_for(args)
    repository = build_repository(settings)
    repository.discover()
    try:
        task = repository.next_eligible()
    except StructuralError as exc:
        print(f"error: {exc}")
        return 1
    if task is None:
        print("No eligible task.")
        return 0
    if args.json:
        print(json.dumps(task.to_dict(), indent=2))
    else:
        print(f"{task.qualified_id}: {task.title}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="specpilot", description="SpecPilot task automation")
    parser.add_argument("--workspace", help="Workspace root (defaults to SPECPILOT_WORKSPACE)")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Run automation until no eligible task remains")
    p_run.add_argument("--resume", action="store_true", help="Continue the newest unfinished session")
    p_run.add_argument("--max-retries", type=int, default=None)
    p_run.add_argument("--skip-optional", action="store_true", help="Skip optional tasks that fail")
    p_run.add_argument("--stop-on-failure", action="store_true")
    p_run.set_defaults(func=cmd_run)

    p_tasks = sub.add_parser("tasks", help="List parsed tasks")
    p_tasks.add_argument("--status", choices=[status.value for status in TaskStatus])
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_next = sub.add_parser("next", help="Show the next eligible task")
    p_next.add_argument("--json", action="store_true", help="Output JSON")
    p_next.set_defaults(func=cmd_next)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0
    try:
        return args.func(args)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
