"""SpecPilot session store diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from pydantic import ValidationError

from specpilot.config import SpecPilotSettings
from specpilot.session import SessionStore
from specpilot.storage import ChromaEventStore, ChromaUnavailableError


def load_settings() -> SpecPilotSettings:
    try:
        return SpecPilotSettings()
    except ValidationError as exc:
        print(f"Configuration error: {exc}")
        raise SystemExit(2)


def load_store(settings: SpecPilotSettings) -> SessionStore:
    try:
        events = ChromaEventStore(settings.chroma_persist_path)
        events.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return SessionStore(events)


def cmd_sessions(args: argparse.Namespace) -> None:
    store = load_store(load_settings())
    sessions = store.list_sessions(args.workspace)
    if args.json:
        print(json.dumps([session.model_dump(mode="json") for session in sessions], indent=2))
        return
    for session in sessions:
        print(
            f"{session.session_id} [{session.status.value}] {session.workspace} "
            f"completed={len(session.completed_task_ids)} failed={len(session.failed_task_ids)} "
            f"skipped={len(session.skipped_task_ids)}"
        )


def cmd_events(args: argparse.Namespace) -> None:
    store = load_store(load_settings())
    events = store.history(args.session_id)
    if args.event_type:
        events = [event for event in events if event.event_type == args.event_type]
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]
    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "task_id": event.metadata.get("task_id"),
            "timestamp": event.timestamp.isoformat(),
            "excerpt": event.document[:200],
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_unfinished(args: argparse.Namespace) -> None:
    settings = load_settings()
    store = load_store(settings)
    workspace = args.workspace or str(settings.workspace_root.expanduser().resolve())
    session = store.latest_unfinished(workspace)
    if session is None:
        print(json.dumps({"workspace": workspace, "session": None}))
        return
    print(json.dumps({"workspace": workspace, "session": session.model_dump(mode="json")}, indent=2))


def cmd_stats(args: argparse.Namespace) -> None:
    store = load_store(load_settings())
    if args.session_id:
        session = store.load(args.session_id)
        if session is None:
            print(f"Unknown session: {args.session_id}")
            raise SystemExit(1)
        sessions = [session]
    else:
        sessions = store.list_sessions(args.workspace)

    status_counts: dict[str, int] = {}
    for session in sessions:
        status_counts[session.status.value] = status_counts.get(session.status.value, 0) + 1

    payload = {
        "sessions_total": len(sessions),
        "status_counts": status_counts,
        "sessions": [store.statistics(session).to_dict() for session in sessions],
    }
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SpecPilot diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List recorded sessions, newest first")
    p_sessions.add_argument("--workspace")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_events = sub.add_parser("events", help="Show the event stream of a session")
    p_events.add_argument("session_id")
    p_events.add_argument("--event-type")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    p_unfinished = sub.add_parser("unfinished", help="Show the session a restart would resume")
    p_unfinished.add_argument("--workspace")
    p_unfinished.set_defaults(func=cmd_unfinished)

    p_stats = sub.add_parser("stats", help="Show session statistics")
    p_stats.add_argument("--session-id")
    p_stats.add_argument("--workspace")
    p_stats.set_defaults(func=cmd_stats)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
