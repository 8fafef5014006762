"""
Process configuration read from environment variables.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "sqlite+aiosqlite:///teamsync.db"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    db_url: str = DEFAULT_DB_URL
    mongo_db_name: Optional[str] = None
    encryption_key: Optional[str] = None

    atlassian_client_id: Optional[str] = None
    atlassian_client_secret: Optional[str] = None
    atlassian_callback_url: Optional[str] = None
    github_client_id: Optional[str] = None
    github_client_secret: Optional[str] = None
    github_callback_url: Optional[str] = None

    commit_min_message_length: int = 10
    commit_cooldown_minutes: int = 30
    github_max_commits: int = 100
    github_all_branches: bool = True
    jira_story_point_field: str = "customfield_10026"

    sync_history_limit: int = 20
    http_timeout_seconds: int = 30
    sync_leg_timeout_seconds: int = 300
    sync_max_concurrent_teams: int = 4
    jira_max_concurrent_sprints: int = 4

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        :param env: Mapping to read from, defaults to ``os.environ``.
        :return: Settings instance.
        """
        env = os.environ if env is None else env
        return cls(
            db_url=env.get("DATABASE_URL") or env.get("DB_CONN_STRING") or DEFAULT_DB_URL,
            mongo_db_name=env.get("MONGO_DB_NAME") or None,
            encryption_key=env.get("ENCRYPTION_KEY") or None,
            atlassian_client_id=env.get("ATLASSIAN_CLIENT_ID") or None,
            atlassian_client_secret=env.get("ATLASSIAN_CLIENT_SECRET") or None,
            atlassian_callback_url=env.get("ATLASSIAN_CALLBACK_URL") or None,
            github_client_id=env.get("GITHUB_CLIENT_ID") or None,
            github_client_secret=env.get("GITHUB_CLIENT_SECRET") or None,
            github_callback_url=env.get("GITHUB_CALLBACK_URL") or None,
            commit_min_message_length=_env_int(env, "COMMIT_MIN_MESSAGE_LENGTH", 10),
            commit_cooldown_minutes=_env_int(env, "COMMIT_COOLDOWN_MINUTES", 30),
            github_max_commits=_env_int(env, "GITHUB_MAX_COMMITS", 100),
            github_all_branches=_env_bool(env, "GITHUB_ALL_BRANCHES", True),
            jira_story_point_field=env.get("JIRA_STORY_POINT_FIELD")
            or "customfield_10026",
            sync_history_limit=_env_int(env, "SYNC_HISTORY_LIMIT", 20),
            http_timeout_seconds=_env_int(env, "HTTP_TIMEOUT_SECONDS", 30),
            sync_leg_timeout_seconds=_env_int(env, "SYNC_LEG_TIMEOUT_SECONDS", 300),
            sync_max_concurrent_teams=_env_int(env, "SYNC_MAX_CONCURRENT_TEAMS", 4),
            jira_max_concurrent_sprints=_env_int(
                env, "JIRA_MAX_CONCURRENT_SPRINTS", 4
            ),
        )
