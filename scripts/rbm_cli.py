#!/usr/bin/env python3
"""Operator CLI for inspecting RBM state and forcing manual rollbacks."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
from typing import Any, Optional, Sequence
from uuid import UUID

# Ensure repository root is importable when script is executed by path.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.db.session import build_engine, build_session_factory, database_url_from_env
from rbm.service import RbmService, rbm_config_view
from rbm.store import SqlAlchemyRbmStore


def _parse_campaign_id(value: str) -> UUID:
    try:
        return UUID(value.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid campaign id: {value}") from exc


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid integer: {value}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("Value must be positive.")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Risk-based multiplier operator CLI")
    parser.add_argument("--database-url", help="SQLAlchemy database URL (defaults to DATABASE_URL or DB_* env)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    status_cmd = subparsers.add_parser("status", help="Show RBM status for one campaign")
    status_cmd.add_argument("--campaign-id", required=True, type=_parse_campaign_id)

    events_cmd = subparsers.add_parser("events", help="List RBM audit events")
    events_cmd.add_argument("--campaign-id", type=_parse_campaign_id, help="Restrict to one campaign")
    events_cmd.add_argument("--limit", type=_positive_int, default=50)

    subparsers.add_parser("config", help="Show RBM system limits and plan tiers")

    deactivate_cmd = subparsers.add_parser("deactivate", help="Manually roll a campaign back to 1x")
    deactivate_cmd.add_argument("--campaign-id", required=True, type=_parse_campaign_id)
    return parser


def _build_service(database_url: Optional[str]) -> RbmService:
    url = database_url or database_url_from_env()
    engine = build_engine(url)
    return RbmService(store=SqlAlchemyRbmStore(build_session_factory(engine)))


def _run(service: RbmService, args: argparse.Namespace) -> tuple[int, dict[str, Any]]:
    if args.command == "status":
        view = service.status(args.campaign_id)
        if view is None:
            return 1, {"error": "Campaign not found", "campaignId": str(args.campaign_id)}
        return 0, view.as_payload()

    if args.command == "events":
        if args.campaign_id is not None:
            events = service.list_events(args.campaign_id, args.limit)
        else:
            events = service.all_events(args.limit)
        return 0, {"events": [event.as_payload() for event in events]}

    if args.command == "deactivate":
        result = service.deactivate(args.campaign_id)
        return (0 if result.success else 1), result.as_payload()

    raise SystemExit(f"Unsupported command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "config":
        print(json.dumps(rbm_config_view().as_payload(), sort_keys=True))
        return 0

    try:
        service = _build_service(args.database_url)
    except RuntimeError as exc:
        raise SystemExit(str(exc)) from exc

    exit_code, payload = _run(service, args)
    print(json.dumps(payload, sort_keys=True))
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
