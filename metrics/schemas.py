from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, TypedDict


class MemberRow(TypedDict):
    member_id: str
    user_id: str
    email: Optional[str]
    full_name: Optional[str]
    role: str
    jira_account_id: Optional[str]
    github_username: Optional[str]


class TaskRow(TypedDict):
    issue_id: str
    assignee_account_id: Optional[str]
    status_category: Optional[str]
    story_point: float


class CommitRow(TypedDict):
    hash: str
    author_email: Optional[str]
    is_counted: bool
    commit_date: datetime


class SprintRow(TypedDict):
    sprint_id: str
    state: Optional[str]


@dataclass(frozen=True)
class MemberContribution:
    member_id: str
    user_id: str
    email: Optional[str]
    full_name: Optional[str]
    role: str
    jira_account_id: Optional[str]
    github_username: Optional[str]
    done_tasks: int
    done_story_points: float
    total_tasks: int
    total_story_points: float
    counted_commits: int

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "user": {
                "id": self.user_id,
                "email": self.email,
                "full_name": self.full_name,
            },
            "role": self.role,
            "mapping": {
                "jira_account_id": self.jira_account_id,
                "github_username": self.github_username,
            },
            "jira": {
                "done_tasks": self.done_tasks,
                "done_story_points": self.done_story_points,
                "total_tasks": self.total_tasks,
                "total_story_points": self.total_story_points,
            },
            "github": {"counted_commits": self.counted_commits},
        }


@dataclass(frozen=True)
class DashboardSummary:
    team_id: str
    team_name: str
    last_sync_at: Optional[datetime]
    tasks_total: int
    tasks_done: int
    done_percent: int
    story_point_total: float
    story_point_done: float
    commits_total: int
    commits_counted: int
    last_commit_date: Optional[datetime]
    sprints_total: int
    sprints_active: int

    @property
    def tasks_todo(self) -> int:
        return self.tasks_total - self.tasks_done

    @property
    def sprints_inactive(self) -> int:
        return self.sprints_total - self.sprints_active

    def to_dict(self) -> dict:
        return {
            "team": {
                "id": self.team_id,
                "name": self.team_name,
                "last_sync_at": self.last_sync_at.isoformat()
                if self.last_sync_at
                else None,
            },
            "tasks": {
                "total": self.tasks_total,
                "done": self.tasks_done,
                "todo": self.tasks_todo,
                "done_percent": self.done_percent,
                "story_point_total": self.story_point_total,
                "story_point_done": self.story_point_done,
            },
            "commits": {
                "total": self.commits_total,
                "counted": self.commits_counted,
                "last_commit_date": self.last_commit_date.isoformat()
                if self.last_commit_date
                else None,
            },
            "sprints": {
                "total": self.sprints_total,
                "active": self.sprints_active,
                "inactive": self.sprints_inactive,
            },
        }
