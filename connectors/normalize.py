"""
Normalization of raw provider payloads into connector models.

Shared by the REST connectors and by the webhook handler, which receives
the same Jira issue shape pushed instead of pulled.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from connectors.models import RemoteCommit, RemoteIssue, RemoteSprint

logger = logging.getLogger(__name__)

DEFAULT_STORY_POINT_FIELD = "customfield_10026"

_TZ_NO_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lower-case and trim an email address; blank input returns None."""
    if not email:
        return None
    return email.strip().lower() or None


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as sent by Jira or GitHub.

    Handles ``Z`` suffixes and ``+0700`` style offsets. Naive values are
    taken as UTC. Unparseable input returns None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _TZ_NO_COLON.sub(r"\1:\2", text)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Could not parse timestamp {value!r}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _story_points(fields: Dict[str, Any], story_point_field: str) -> float:
    for key in (story_point_field, "storyPoints", "story_points"):
        raw = fields.get(key)
        if raw is None:
            continue
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric story points {raw!r} in {key}")
    return 0.0


def _looks_like_sprint(value: Any) -> bool:
    return isinstance(value, dict) and "id" in value and "state" in value and "name" in value


def extract_sprint_id(fields: Dict[str, Any]) -> Optional[int]:
    """
    Find the sprint an issue currently belongs to.

    Jira puts sprints in a site-specific custom field holding a list of
    sprint objects; the active one wins, otherwise the last listed.

    :param fields: ``issue["fields"]`` payload.
    :return: External sprint id, or None when the payload has no sprint context.
    """
    candidates: list = []
    sprint = fields.get("sprint")
    if _looks_like_sprint(sprint):
        candidates.append(sprint)
    for value in fields.values():
        if isinstance(value, list) and value and all(_looks_like_sprint(v) for v in value):
            candidates.extend(value)
    if not candidates:
        return None

    chosen = next(
        (c for c in candidates if str(c.get("state", "")).lower() == "active"),
        candidates[-1],
    )
    try:
        return int(chosen["id"])
    except (TypeError, ValueError):
        return None


def jira_issue_payload_to_remote(
    issue: Dict[str, Any],
    story_point_field: str = DEFAULT_STORY_POINT_FIELD,
) -> RemoteIssue:
    """
    Convert a Jira issue JSON object into a RemoteIssue.

    :param issue: Issue object from the REST API or a webhook body.
    :param story_point_field: Custom field carrying the estimate.
    :return: RemoteIssue.
    :raises ValueError: If the issue has no id or key.
    """
    issue_id = issue.get("id")
    issue_key = issue.get("key")
    if not issue_id or not issue_key:
        raise ValueError("Jira issue payload is missing id or key")

    fields = issue.get("fields") or {}
    status = fields.get("status") or {}
    category = status.get("statusCategory") or {}
    assignee = fields.get("assignee") or {}
    project = fields.get("project") or {}

    return RemoteIssue(
        issue_id=str(issue_id),
        issue_key=str(issue_key),
        summary=fields.get("summary"),
        status_name=status.get("name"),
        status_category=category.get("key"),
        story_point=_story_points(fields, story_point_field),
        assignee_account_id=assignee.get("accountId"),
        assignee_name=assignee.get("displayName"),
        project_key=project.get("key") or str(issue_key).rsplit("-", 1)[0],
        sprint_id=extract_sprint_id(fields),
        created_at=parse_datetime(fields.get("created")),
        updated_at=parse_datetime(fields.get("updated")),
    )


def jira_sprint_payload_to_remote(sprint: Dict[str, Any]) -> RemoteSprint:
    """Convert a Jira Agile sprint object into a RemoteSprint."""
    return RemoteSprint(
        id=int(sprint["id"]),
        name=sprint.get("name") or f"Sprint {sprint['id']}",
        state=(sprint.get("state") or "").lower() or None,
        start_date=parse_datetime(sprint.get("startDate")),
        end_date=parse_datetime(sprint.get("endDate")),
    )


def github_commit_to_remote(commit: Any, branches: Iterable[str] = ()) -> RemoteCommit:
    """
    Convert a PyGithub ``Commit`` into a RemoteCommit.

    :param commit: ``github.Commit.Commit`` instance.
    :param branches: Branch names the commit was seen on.
    :return: RemoteCommit.
    :raises ValueError: If the commit carries no author date.
    """
    git_commit = commit.commit
    author = git_commit.author
    commit_date = parse_datetime(getattr(author, "date", None))
    if commit_date is None:
        raise ValueError(f"Commit {commit.sha} has no author date")
    return RemoteCommit(
        hash=commit.sha,
        message=git_commit.message or "",
        author_email=getattr(author, "email", None),
        author_name=getattr(author, "name", None),
        commit_date=commit_date,
        url=getattr(commit, "html_url", None),
        branches=list(branches),
    )
