#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any, List, Optional

from storage import create_store, detect_db_type
from teamsync.config import Settings
from teamsync.exceptions import TeamSyncError
from teamsync.realtime import RecordingPublisher
from teamsync.runtime import build_services
from teamsync.vault import generate_key

REPO_ROOT = Path(__file__).resolve().parent


def _load_dotenv(path: Path) -> int:
    """
    Load a .env file into process environment (without overriding existing vars).

    Keeps dependencies minimal (avoids python-dotenv).
    """
    if not path.exists():
        return 0
    loaded = 0
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key or key in os.environ:
            continue
        if (len(value) >= 2) and ((value[0] == value[-1]) and value[0] in {"'", '"'}):
            value = value[1:-1]
        os.environ[key] = value
        loaded += 1
    return loaded


def _resolve_db_type(db_url: str, db_type: Optional[str]) -> str:
    if db_type:
        resolved = db_type.lower()
    else:
        try:
            resolved = detect_db_type(db_url)
        except ValueError as exc:
            raise SystemExit(str(exc)) from exc

    if resolved not in {"postgres", "mongo", "sqlite"}:
        raise SystemExit("DB_TYPE must be 'postgres', 'mongo', or 'sqlite'")
    return resolved


def _settings(ns: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if getattr(ns, "db", None):
        settings = dataclasses.replace(settings, db_url=ns.db)
    return settings


async def _run_with_services(ns: argparse.Namespace, handler, publisher=None) -> Any:
    settings = _settings(ns)
    db_type = _resolve_db_type(settings.db_url, getattr(ns, "db_type", None))
    store = create_store(settings.db_url, db_type, db_name=settings.mongo_db_name)
    async with store:
        return await handler(build_services(settings, store, publisher))


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _run(ns: argparse.Namespace, handler, publisher=None) -> int:
    try:
        result = asyncio.run(_run_with_services(ns, handler, publisher))
    except TeamSyncError as exc:
        logging.error(str(exc))
        return 1
    _print_json(result)
    return 0


def _cmd_sync_team(ns: argparse.Namespace) -> int:
    async def _handler(services):
        summary = await services.orchestrator.run_team_sync(
            ns.team_id, user_id=ns.user_id
        )
        return summary.to_dict()

    return _run(ns, _handler)


def _cmd_sync_all(ns: argparse.Namespace) -> int:
    async def _handler(services):
        summaries = await services.orchestrator.run_all_teams()
        return [s.to_dict() for s in summaries]

    return _run(ns, _handler)


def _cmd_metrics_ranking(ns: argparse.Namespace) -> int:
    async def _handler(services):
        rows = await services.ranking(ns.team_id)
        return [row.to_dict() for row in rows]

    return _run(ns, _handler)


def _cmd_metrics_dashboard(ns: argparse.Namespace) -> int:
    async def _handler(services):
        summary = await services.dashboard(ns.team_id)
        return summary.to_dict()

    return _run(ns, _handler)


def _cmd_members_map(ns: argparse.Namespace) -> int:
    async def _handler(services):
        update = await services.identity.set_mapping(
            ns.member_id,
            jira_account_id=ns.jira_account_id,
            github_username=ns.github_username,
        )
        return {
            "member_id": update.member.id,
            "jira_account_id": update.member.jira_account_id,
            "github_username": update.member.github_username,
            "relinked": update.relinked,
            "unlinked": update.unlinked,
        }

    return _run(ns, _handler)


def _cmd_team_leader_sync(ns: argparse.Namespace) -> int:
    async def _handler(services):
        result = await services.reconcile_leader(ns.team_id, ns.user_id)
        return dataclasses.asdict(result)

    return _run(ns, _handler)


def _cmd_webhook_replay(ns: argparse.Namespace) -> int:
    path = Path(ns.file)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Could not read webhook payload from {path}: {exc}") from exc
    payloads = payload if isinstance(payload, list) else [payload]
    publisher = RecordingPublisher()

    async def _handler(services):
        acks = []
        for item in payloads:
            ack = await services.jira.handle_webhook(item)
            acks.append(dataclasses.asdict(ack))
        return {
            "acks": acks,
            "events": [dataclasses.asdict(e) for e in publisher.events],
        }

    return _run(ns, _handler, publisher)


def _cmd_db_init(ns: argparse.Namespace) -> int:
    async def _handler(services):
        await services.store.create_schema()
        return {"schema": "ready"}

    return _run(ns, _handler)


def _cmd_vault_generate_key(_ns: argparse.Namespace) -> int:
    print(generate_key())
    return 0


def _add_db_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or os.getenv("DB_CONN_STRING"),
        help="Database connection string (defaults to DATABASE_URL).",
    )
    parser.add_argument(
        "--db-type",
        choices=["postgres", "mongo", "sqlite"],
        help="Optional DB backend override.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="teamsync",
        description="Sync team commits and Jira work and rank member contributions.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING). Defaults to env LOG_LEVEL or INFO.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # ---- sync ----
    sync = sub.add_parser("sync", help="Run GitHub and Jira synchronization.")
    sync_sub = sync.add_subparsers(dest="sync_command", required=True)

    team = sync_sub.add_parser("team", help="Synchronize one team now.")
    _add_db_args(team)
    team.add_argument("--team-id", required=True, help="Team to synchronize.")
    team.add_argument(
        "--user-id", help="Whose credentials to use (defaults to the team Leader)."
    )
    team.set_defaults(func=_cmd_sync_team)

    every = sync_sub.add_parser("all", help="Synchronize every team.")
    _add_db_args(every)
    every.set_defaults(func=_cmd_sync_all)

    # ---- metrics ----
    metrics = sub.add_parser("metrics", help="Read contribution metrics.")
    metrics_sub = metrics.add_subparsers(dest="metrics_command", required=True)

    ranking = metrics_sub.add_parser("ranking", help="Ranked member contributions.")
    _add_db_args(ranking)
    ranking.add_argument("--team-id", required=True)
    ranking.set_defaults(func=_cmd_metrics_ranking)

    dashboard = metrics_sub.add_parser("dashboard", help="Team dashboard summary.")
    _add_db_args(dashboard)
    dashboard.add_argument("--team-id", required=True)
    dashboard.set_defaults(func=_cmd_metrics_dashboard)

    # ---- members ----
    members = sub.add_parser("members", help="Manage team members.")
    members_sub = members.add_subparsers(dest="members_command", required=True)

    mapping = members_sub.add_parser(
        "map", help="Set a member's Jira account id and/or GitHub username."
    )
    _add_db_args(mapping)
    mapping.add_argument("--member-id", required=True)
    mapping.add_argument("--jira-account-id", help="Jira (Atlassian) account id.")
    mapping.add_argument("--github-username", help="GitHub login.")
    mapping.set_defaults(func=_cmd_members_map)

    # ---- team ----
    team_cmd = sub.add_parser("team", help="Team administration.")
    team_sub = team_cmd.add_subparsers(dest="team_command", required=True)

    leader = team_sub.add_parser(
        "leader-sync", help="Make the Jira project lead the team Leader."
    )
    _add_db_args(leader)
    leader.add_argument("--team-id", required=True)
    leader.add_argument(
        "--user-id", required=True, help="User whose Jira credential is used."
    )
    leader.set_defaults(func=_cmd_team_leader_sync)

    # ---- webhook ----
    webhook = sub.add_parser("webhook", help="Jira webhook tooling.")
    webhook_sub = webhook.add_subparsers(dest="webhook_command", required=True)

    replay = webhook_sub.add_parser(
        "replay", help="Apply a saved Jira webhook payload (or a JSON list of them)."
    )
    _add_db_args(replay)
    replay.add_argument("--file", required=True, help="Path to the JSON payload.")
    replay.set_defaults(func=_cmd_webhook_replay)

    # ---- vault ----
    vault = sub.add_parser("vault", help="Credential vault tooling.")
    vault_sub = vault.add_subparsers(dest="vault_command", required=True)
    gen = vault_sub.add_parser(
        "generate-key", help="Print a fresh ENCRYPTION_KEY (64 hex characters)."
    )
    gen.set_defaults(func=_cmd_vault_generate_key)

    # ---- db ----
    db = sub.add_parser("db", help="Database administration.")
    db_sub = db.add_subparsers(dest="db_command", required=True)
    init = db_sub.add_parser("init", help="Create tables and indexes.")
    _add_db_args(init)
    init.set_defaults(func=_cmd_db_init)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    if os.getenv("DISABLE_DOTENV", "").strip().lower() not in {
        "1",
        "true",
        "yes",
        "on",
    }:
        _load_dotenv(REPO_ROOT / ".env")

    parser = build_parser()
    ns = parser.parse_args(argv)

    level_name = str(getattr(ns, "log_level", "") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    func = getattr(ns, "func", None)
    if func is None:
        parser.print_help()
        return 2
    return int(func(ns))


if __name__ == "__main__":
    raise SystemExit(main())
