"""
Data models for records fetched from external providers.

These are transport shapes only; the persisted records live in ``models``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class RemoteCommit:
    """A commit as reported by the VCS host."""

    hash: str
    message: str
    author_email: Optional[str]
    commit_date: datetime
    author_name: Optional[str] = None
    url: Optional[str] = None
    branches: List[str] = field(default_factory=list)


@dataclass
class RemoteSprint:
    """A sprint on a Jira board."""

    id: int
    name: str
    state: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class RemoteIssue:
    """A Jira issue reduced to the fields tracked for contribution metrics."""

    issue_id: str
    issue_key: str
    summary: Optional[str] = None
    status_name: Optional[str] = None
    status_category: Optional[str] = None
    story_point: float = 0.0
    assignee_account_id: Optional[str] = None
    assignee_name: Optional[str] = None
    project_key: Optional[str] = None
    sprint_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ProjectLead:
    """Lead of a Jira project."""

    account_id: Optional[str]
    display_name: Optional[str] = None


@dataclass
class OAuthToken:
    """Result of an OAuth code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None


@dataclass
class AtlassianSite:
    """An Atlassian cloud site reachable with a token."""

    cloud_id: str
    url: Optional[str] = None
    name: Optional[str] = None


@dataclass
class ExternalAccount:
    """Identity of the account behind a token."""

    account_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
