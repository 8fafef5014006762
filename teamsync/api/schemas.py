from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    services: Dict[str, str]


class SyncRequest(BaseModel):
    user_id: Optional[str] = None


class SyncResponse(BaseModel):
    team_id: str
    started_at: datetime
    finished_at: Optional[datetime]
    git: Dict[str, int] = Field(default_factory=dict)
    jira: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class SyncHistoryResponse(BaseModel):
    team_id: str
    last_sync_at: Optional[datetime]
    history: List[Dict[str, Any]]


class MappingRequest(BaseModel):
    jira_account_id: Optional[str] = None
    github_username: Optional[str] = None


class MappingResponse(BaseModel):
    member_id: str
    team_id: str
    jira_account_id: Optional[str]
    github_username: Optional[str]
    relinked: int
    unlinked: int


class LeaderSyncRequest(BaseModel):
    user_id: str


class LeaderSyncResponse(BaseModel):
    updated: bool
    leader_member_id: Optional[str] = None
    lead_account_id: Optional[str] = None
    lead_name: Optional[str] = None
    reason: Optional[str] = None


class WebhookResponse(BaseModel):
    received: bool = True
    handled: bool
    event: Optional[str] = None
    action: Optional[str] = None
    team_id: Optional[str] = None
    issue_key: Optional[str] = None
    reason: Optional[str] = None


class ConnectRequest(BaseModel):
    code: str
    redirect_uri: Optional[str] = None


class ConnectResponse(BaseModel):
    provider: str
    account_id: Optional[str]
    connected: bool


class RankingUser(BaseModel):
    id: str
    email: Optional[str]
    full_name: Optional[str]


class RankingMapping(BaseModel):
    jira_account_id: Optional[str]
    github_username: Optional[str]


class RankingJira(BaseModel):
    done_tasks: int
    done_story_points: float
    total_tasks: int
    total_story_points: float


class RankingGithub(BaseModel):
    counted_commits: int


class RankingRow(BaseModel):
    member_id: str
    user: RankingUser
    role: str
    mapping: RankingMapping
    jira: RankingJira
    github: RankingGithub


class RankingResponse(BaseModel):
    team_id: str
    ranking: List[RankingRow]


class DashboardTeam(BaseModel):
    id: str
    name: str
    last_sync_at: Optional[datetime]


class DashboardTasks(BaseModel):
    total: int
    done: int
    todo: int
    done_percent: int
    story_point_total: float
    story_point_done: float


class DashboardCommits(BaseModel):
    total: int
    counted: int
    last_commit_date: Optional[datetime]


class DashboardSprints(BaseModel):
    total: int
    active: int
    inactive: int


class DashboardResponse(BaseModel):
    team: DashboardTeam
    tasks: DashboardTasks
    commits: DashboardCommits
    sprints: DashboardSprints
