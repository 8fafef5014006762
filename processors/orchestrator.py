import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from models.credentials import GITHUB
from models.teams import ROLE_LEADER, Team
from processors.commits import CommitIngestor
from processors.jira import JiraSync
from teamsync.config import Settings
from teamsync.credentials import CredentialService
from teamsync.exceptions import ConfigurationError, NotConnectedError

logger = logging.getLogger(__name__)

LEG_GIT = "git"
LEG_JIRA = "jira"


@dataclass
class LegOutcome:
    name: str
    status: str = "ok"
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


@dataclass
class SyncSummary:
    """Structured result of one orchestration run."""

    team_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    git: Dict[str, int] = field(default_factory=dict)
    jira: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_history_entry(self) -> Dict[str, Any]:
        return {
            "synced_at": (self.finished_at or self.started_at).isoformat(),
            "git": self.git.get("inserted", 0),
            "jira_sprints": self.jira.get("sprints", 0),
            "jira_tasks": self.jira.get("tasks", 0),
            "errors": list(self.errors),
            "skipped": list(self.skipped),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class SyncOrchestrator:
    """
    Runs one reconciliation pass per team.

    The VCS and issue-tracker legs run concurrently, each behind its own
    error capture and timeout, so neither can cancel or fail the other.
    ``run_team_sync`` always returns a summary.
    """

    def __init__(
        self,
        store,
        credentials: CredentialService,
        commits: CommitIngestor,
        jira: JiraSync,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.credentials = credentials
        self.commits = commits
        self.jira = jira
        self.settings = settings or Settings()

    async def _default_user(self, team_id: str) -> Optional[str]:
        members = await self.store.list_members(team_id)
        leader = next((m for m in members if m.role == ROLE_LEADER), None)
        return leader.user_id if leader else None

    async def _git_leg(self, team: Team, user_id: Optional[str]) -> LegOutcome:
        if user_id is None:
            raise NotConnectedError(GITHUB, "no leader to take GitHub credentials from")
        credential = await self.credentials.load(user_id, GITHUB)
        if credential is None:
            raise NotConnectedError(GITHUB)
        result = await self.commits.sync_team(team, credential)
        return LegOutcome(
            name=LEG_GIT,
            status="error" if result.errors else "ok",
            counts={
                "fetched": result.fetched,
                "inserted": result.inserted,
                "counted": result.counted,
                "rejected": result.rejected,
                "unchanged": result.unchanged,
            },
            errors=result.errors,
        )

    async def _jira_leg(self, team: Team, user_id: Optional[str]) -> LegOutcome:
        if user_id is None:
            raise NotConnectedError("jira", "no leader to take Jira credentials from")
        result = await self.jira.sync_team(team, user_id)
        return LegOutcome(
            name=LEG_JIRA,
            status="error" if result.errors else "ok",
            counts={
                "sprints": result.sprints,
                "tasks": result.tasks,
                "created": result.created,
                "updated": result.updated,
                "removed": result.removed,
            },
            errors=result.errors,
        )

    async def _run_leg(
        self, name: str, leg: Callable[[], Awaitable[LegOutcome]]
    ) -> LegOutcome:
        timeout = self.settings.sync_leg_timeout_seconds
        try:
            return await asyncio.wait_for(leg(), timeout=timeout)
        except (NotConnectedError, ConfigurationError) as e:
            logger.info(f"Skipping {name} leg: {e}")
            return LegOutcome(name=name, status="skipped", errors=[str(e)])
        except asyncio.TimeoutError:
            logger.error(f"{name} leg timed out after {timeout}s")
            return LegOutcome(name=name, status="error", errors=[f"timed out after {timeout}s"])
        except Exception as e:
            logger.error(f"{name} leg failed: {e}")
            return LegOutcome(name=name, status="error", errors=[str(e) or type(e).__name__])

    async def run_team_sync(
        self, team_id: str, user_id: Optional[str] = None
    ) -> SyncSummary:
        """
        Run both legs for a team and record the run in its history.

        :param team_id: Team to synchronize.
        :param user_id: Whose credentials to use; defaults to the team Leader.
        :return: SyncSummary (never raises).
        """
        summary = SyncSummary(team_id=team_id, started_at=datetime.now(timezone.utc))
        try:
            team = await self.store.get_team(team_id)
            if team is None:
                summary.errors.append(f"team {team_id} not found")
                summary.finished_at = datetime.now(timezone.utc)
                return summary
            if user_id is None:
                user_id = await self._default_user(team_id)
        except Exception as e:
            logger.error(f"Could not load team {team_id}: {e}")
            summary.errors.append(f"team {team_id}: {e}")
            summary.finished_at = datetime.now(timezone.utc)
            return summary

        git, jira = await asyncio.gather(
            self._run_leg(LEG_GIT, lambda: self._git_leg(team, user_id)),
            self._run_leg(LEG_JIRA, lambda: self._jira_leg(team, user_id)),
        )

        summary.git = git.counts
        summary.jira = jira.counts
        for outcome in (git, jira):
            if outcome.status == "skipped":
                summary.skipped.extend(f"{outcome.name}: {e}" for e in outcome.errors)
            else:
                summary.errors.extend(f"{outcome.name}: {e}" for e in outcome.errors)
        summary.finished_at = datetime.now(timezone.utc)

        try:
            await self.store.record_sync(
                team_id,
                summary.finished_at,
                summary.to_history_entry(),
                self.settings.sync_history_limit,
            )
        except Exception as e:
            logger.error(f"Could not record sync history for team {team_id}: {e}")
            summary.errors.append(f"history: {e}")

        logger.info(
            f"Team {team_id} sync finished: git={summary.git} jira={summary.jira} "
            f"errors={len(summary.errors)} skipped={len(summary.skipped)}"
        )
        return summary

    async def run_all_teams(self) -> List[SyncSummary]:
        """Synchronize every team, a bounded number at a time."""
        teams = await self.store.list_teams()
        semaphore = asyncio.Semaphore(max(1, self.settings.sync_max_concurrent_teams))

        async def _one(team: Team) -> SyncSummary:
            async with semaphore:
                return await self.run_team_sync(team.id)

        summaries = await asyncio.gather(*(_one(team) for team in teams))
        failed = sum(1 for s in summaries if s.errors)
        logger.info(f"Synced {len(summaries)} team(s), {failed} with errors")
        return list(summaries)

    async def get_sync_history(self, team_id: str) -> Optional[Dict[str, Any]]:
        team = await self.store.get_team(team_id)
        if team is None:
            return None
        return {
            "team_id": team.id,
            "last_sync_at": team.last_sync_at.isoformat() if team.last_sync_at else None,
            "history": list(team.sync_history or []),
        }
