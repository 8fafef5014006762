from datetime import timedelta

import pytest

from metrics.contributions import (compute_dashboard,
                                   compute_member_contributions,
                                   load_team_dashboard, load_team_ranking,
                                   percent, rank_contributions)
from models.teams import Commit, Sprint, Task
from teamsync.exceptions import NotFoundError


def _member(member_id, email, account_id, role="Member"):
    return {
        "member_id": member_id,
        "user_id": f"u-{member_id}",
        "email": email,
        "full_name": member_id.title(),
        "role": role,
        "jira_account_id": account_id,
        "github_username": None,
    }


def _task(issue_id, account_id, category, points):
    return {
        "issue_id": issue_id,
        "assignee_account_id": account_id,
        "status_category": category,
        "story_point": points,
    }


def _commit(sha, email, counted, when):
    return {"hash": sha, "author_email": email, "is_counted": counted, "commit_date": when}


class TestPercent:
    @pytest.mark.parametrize(
        "part,total,expected",
        [(0, 0, 0), (0, 5, 0), (5, 5, 100), (1, 3, 33), (2, 3, 67), (1, 8, 13), (1, 200, 1)],
    )
    def test_rounding(self, part, total, expected):
        assert percent(part, total) == expected


class TestMemberContributions:
    """Attribution and ordering of member contributions."""

    def test_attribution(self, t0):
        members = [
            _member("alice", "Alice@Example.com", "acc-a"),
            _member("bob", "bob@example.com", "acc-b"),
        ]
        tasks = [
            _task("1", "acc-a", "done", 3),
            _task("2", "acc-a", "DONE", 2),
            _task("3", "acc-a", "indeterminate", 8),
            _task("4", "acc-b", "new", 5),
            _task("5", None, "done", 13),
        ]
        commits = [
            _commit("c1", "alice@example.com", True, t0),
            _commit("c2", "ALICE@example.com", True, t0),
            _commit("c3", "alice@example.com", False, t0),
            _commit("c4", "someone@else.com", True, t0),
        ]

        alice, bob = compute_member_contributions(members, tasks, commits)

        assert alice.done_tasks == 2
        assert alice.done_story_points == 5.0
        assert alice.total_tasks == 3
        assert alice.total_story_points == 13.0
        assert alice.counted_commits == 2
        assert bob.done_tasks == 0
        assert bob.total_story_points == 5.0
        assert bob.counted_commits == 0

    def test_unmapped_member_has_zero_jira(self, t0):
        (member,) = compute_member_contributions(
            [_member("carol", "carol@example.com", None)],
            [_task("1", "acc-x", "done", 3)],
            [],
        )
        assert member.done_tasks == 0
        assert member.total_tasks == 0

    def test_ranking_order_and_tie_break(self, t0):
        members = [
            _member("first", "first@example.com", "acc-1"),
            _member("second", "second@example.com", "acc-2"),
            _member("third", "third@example.com", "acc-3"),
            _member("fourth", "fourth@example.com", "acc-4"),
        ]
        tasks = [
            _task("1", "acc-1", "done", 3),
            _task("2", "acc-2", "done", 3),
            _task("3", "acc-3", "done", 8),
            _task("4", "acc-4", "done", 3),
        ]
        commits = [
            _commit("c1", "second@example.com", True, t0),
            _commit("c2", "fourth@example.com", True, t0),
        ]

        ranked = rank_contributions(compute_member_contributions(members, tasks, commits))

        assert [r.member_id for r in ranked] == ["third", "second", "fourth", "first"]

    def test_to_dict_shape(self, t0):
        (row,) = compute_member_contributions(
            [_member("alice", "alice@example.com", "acc-a", role="Leader")], [], []
        )
        data = row.to_dict()
        assert data["user"] == {"id": "u-alice", "email": "alice@example.com", "full_name": "Alice"}
        assert data["mapping"]["jira_account_id"] == "acc-a"
        assert data["jira"]["done_story_points"] == 0.0
        assert data["github"] == {"counted_commits": 0}


class TestDashboard:
    def test_empty_team(self):
        summary = compute_dashboard("t1", "Alpha", None, [], [], [])
        assert summary.done_percent == 0
        assert summary.tasks_todo == 0
        assert summary.last_commit_date is None

    def test_all_done(self, t0):
        summary = compute_dashboard(
            "t1",
            "Alpha",
            t0,
            [_task("1", "a", "done", 2), _task("2", None, "Done", 3)],
            [
                _commit("c1", "a@x.com", True, t0),
                _commit("c2", "a@x.com", False, t0 + timedelta(hours=1)),
            ],
            [{"sprint_id": "s1", "state": "active"}, {"sprint_id": "s2", "state": "closed"}],
        )
        assert summary.done_percent == 100
        assert summary.story_point_done == 5.0
        assert summary.commits_total == 2
        assert summary.commits_counted == 1
        assert summary.last_commit_date == t0 + timedelta(hours=1)
        assert summary.sprints_active == 1
        assert summary.sprints_inactive == 1
        data = summary.to_dict()
        assert data["tasks"]["todo"] == 0
        assert data["team"]["last_sync_at"] == t0.isoformat()


class TestLoaders:
    """Read models built from the store."""

    @pytest.mark.asyncio
    async def test_ranking_and_dashboard_from_store(self, store, team_setup, t0):
        team_id = team_setup.team.id
        sprint = await store.upsert_sprint(
            Sprint(team_id=team_id, jira_sprint_id=11, name="Sprint 1", state="active")
        )
        for issue_id, account_id, category, points in (
            ("1", "acc-dev", "done", 5),
            ("2", "acc-lead", "done", 3),
            ("3", "acc-lead", "new", 8),
        ):
            await store.upsert_task(
                Task(
                    issue_id=issue_id,
                    issue_key=f"ALPHA-{issue_id}",
                    team_id=team_id,
                    sprint_id=sprint.id,
                    assignee_account_id=account_id,
                    status_category=category,
                    story_point=points,
                )
            )
        await store.upsert_commit(
            Commit(
                hash="c1",
                team_id=team_id,
                author_email="lead@example.com",
                commit_date=t0,
                is_counted=True,
            )
        )

        ranking = await load_team_ranking(store, team_id)
        assert [r.member_id for r in ranking] == [team_setup.dev.id, team_setup.leader.id]
        assert ranking[1].counted_commits == 1
        assert ranking[1].email == "Lead@Example.com"

        dashboard = await load_team_dashboard(store, team_id)
        assert dashboard.tasks_total == 3
        assert dashboard.tasks_done == 2
        assert dashboard.done_percent == 67
        assert dashboard.sprints_active == 1
        assert dashboard.commits_counted == 1

    @pytest.mark.asyncio
    async def test_unknown_team(self, store):
        with pytest.raises(NotFoundError):
            await load_team_ranking(store, "missing")
        with pytest.raises(NotFoundError):
            await load_team_dashboard(store, "missing")
