from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from connectors.normalize import normalize_email
from metrics.schemas import (CommitRow, DashboardSummary, MemberContribution,
                             MemberRow, SprintRow, TaskRow)
from teamsync.exceptions import NotFoundError

DONE_CATEGORY = "done"


def is_done(status_category: Optional[str]) -> bool:
    return (status_category or "").strip().lower() == DONE_CATEGORY


def percent(part: int, total: int) -> int:
    """Whole-number percentage, rounded half up; 0 when total is 0."""
    if total <= 0:
        return 0
    return int(part * 100 / total + 0.5)


def compute_member_contributions(
    members: Sequence[MemberRow],
    tasks: Sequence[TaskRow],
    commits: Sequence[CommitRow],
) -> List[MemberContribution]:
    """
    Per-member Jira and GitHub contribution, in member order.

    Tasks are attributed through the member's mapped Jira account id and
    qualified commits through case-insensitive equality of the author email
    with the member's account email.
    """
    by_account: Dict[str, Dict[str, float]] = {}
    for task in tasks:
        account_id = task["assignee_account_id"]
        if not account_id:
            continue
        stats = by_account.setdefault(
            account_id, {"total": 0, "total_sp": 0.0, "done": 0, "done_sp": 0.0}
        )
        points = float(task.get("story_point") or 0.0)
        stats["total"] += 1
        stats["total_sp"] += points
        if is_done(task["status_category"]):
            stats["done"] += 1
            stats["done_sp"] += points

    counted_by_email: Dict[str, int] = {}
    for commit in commits:
        if not commit["is_counted"]:
            continue
        email = normalize_email(commit["author_email"])
        if email:
            counted_by_email[email] = counted_by_email.get(email, 0) + 1

    contributions = []
    for member in members:
        stats = by_account.get(member["jira_account_id"] or "", {})
        email = normalize_email(member["email"])
        contributions.append(
            MemberContribution(
                member_id=member["member_id"],
                user_id=member["user_id"],
                email=member["email"],
                full_name=member["full_name"],
                role=member["role"],
                jira_account_id=member["jira_account_id"],
                github_username=member["github_username"],
                done_tasks=int(stats.get("done", 0)),
                done_story_points=float(stats.get("done_sp", 0.0)),
                total_tasks=int(stats.get("total", 0)),
                total_story_points=float(stats.get("total_sp", 0.0)),
                counted_commits=counted_by_email.get(email, 0) if email else 0,
            )
        )
    return contributions


def rank_contributions(
    contributions: Sequence[MemberContribution],
) -> List[MemberContribution]:
    """
    Order by done story points, then counted commits, both descending.

    ``sorted`` is stable, so equal members keep their enumeration order.
    """
    return sorted(
        contributions, key=lambda c: (-c.done_story_points, -c.counted_commits)
    )


def compute_dashboard(
    team_id: str,
    team_name: str,
    last_sync_at: Optional[datetime],
    tasks: Sequence[TaskRow],
    commits: Sequence[CommitRow],
    sprints: Sequence[SprintRow],
) -> DashboardSummary:
    done_tasks = [t for t in tasks if is_done(t["status_category"])]
    commit_dates = [c["commit_date"] for c in commits if c["commit_date"] is not None]
    return DashboardSummary(
        team_id=team_id,
        team_name=team_name,
        last_sync_at=last_sync_at,
        tasks_total=len(tasks),
        tasks_done=len(done_tasks),
        done_percent=percent(len(done_tasks), len(tasks)),
        story_point_total=sum(float(t.get("story_point") or 0.0) for t in tasks),
        story_point_done=sum(float(t.get("story_point") or 0.0) for t in done_tasks),
        commits_total=len(commits),
        commits_counted=sum(1 for c in commits if c["is_counted"]),
        last_commit_date=max(commit_dates) if commit_dates else None,
        sprints_total=len(sprints),
        sprints_active=sum(
            1 for s in sprints if (s["state"] or "").lower() == "active"
        ),
    )


# --- Store loaders ---


async def _load_team_rows(store, team_id: str):
    team = await store.get_team(team_id)
    if team is None:
        raise NotFoundError(f"Team {team_id} not found")
    sprints = await store.list_sprints(team_id)
    tasks = await store.list_tasks_for_sprints([s.id for s in sprints])
    commits = await store.list_commits(team_id)

    sprint_rows: List[SprintRow] = [{"sprint_id": s.id, "state": s.state} for s in sprints]
    task_rows: List[TaskRow] = [
        {
            "issue_id": t.issue_id,
            "assignee_account_id": t.assignee_account_id,
            "status_category": t.status_category,
            "story_point": t.story_point or 0.0,
        }
        for t in tasks
    ]
    commit_rows: List[CommitRow] = [
        {
            "hash": c.hash,
            "author_email": c.author_email,
            "is_counted": bool(c.is_counted),
            "commit_date": c.commit_date,
        }
        for c in commits
    ]
    return team, sprint_rows, task_rows, commit_rows


async def load_team_ranking(store, team_id: str) -> List[MemberContribution]:
    """Build the ranked leaderboard for a team from persisted records."""
    _team, _sprints, tasks, commits = await _load_team_rows(store, team_id)
    members = await store.list_members(team_id)
    users = {u.id: u for u in await store.get_users([m.user_id for m in members])}

    member_rows: List[MemberRow] = []
    for member in members:
        user = users.get(member.user_id)
        member_rows.append(
            {
                "member_id": member.id,
                "user_id": member.user_id,
                "email": user.email if user else None,
                "full_name": user.full_name if user else None,
                "role": member.role,
                "jira_account_id": member.jira_account_id,
                "github_username": member.github_username,
            }
        )
    return rank_contributions(compute_member_contributions(member_rows, tasks, commits))


async def load_team_dashboard(store, team_id: str) -> DashboardSummary:
    team, sprints, tasks, commits = await _load_team_rows(store, team_id)
    return compute_dashboard(
        team.id, team.name, team.last_sync_at, tasks, commits, sprints
    )
