import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from connectors import ConnectorException, GitHubConnector, parse_repo_url
from connectors.models import RemoteCommit
from connectors.normalize import normalize_email
from models.credentials import GithubCredential
from models.teams import Commit, Team
from teamsync.config import Settings
from teamsync.exceptions import ConfigurationError, ValidationError

MERGE_COMMIT_PATTERN = re.compile(
    r"merge pull request|^merge (?:remote-tracking )?branch\b", re.IGNORECASE
)

REASON_TOO_SHORT = "message too short"
REASON_MERGE = "merge commit"


@dataclass(frozen=True)
class Verdict:
    is_counted: bool
    reason: Optional[str] = None


@dataclass
class CommitIngestResult:
    fetched: int = 0
    inserted: int = 0
    counted: int = 0
    rejected: int = 0
    unchanged: int = 0
    errors: List[str] = field(default_factory=list)


def qualify_commit(
    message: Optional[str],
    commit_date: datetime,
    last_counted_date: Optional[datetime],
    min_message_length: int = 10,
    cooldown_minutes: int = 30,
) -> Verdict:
    """
    Decide whether a commit counts toward its author's contribution.

    Rules apply in order: message length, merge commits, then the cooldown
    since the author's most recent counted commit in the same team.

    :param message: Commit message.
    :param commit_date: Author timestamp of the commit.
    :param last_counted_date: Timestamp of the author's latest counted commit
        at or before ``commit_date``, or None.
    :return: Verdict.
    """
    text = (message or "").strip()
    if len(text) < min_message_length:
        return Verdict(False, REASON_TOO_SHORT)
    if MERGE_COMMIT_PATTERN.search(text):
        return Verdict(False, REASON_MERGE)
    if last_counted_date is not None:
        elapsed = (commit_date - last_counted_date).total_seconds() / 60
        if elapsed < cooldown_minutes:
            return Verdict(
                False, f"too soon ({round(elapsed)}m < {cooldown_minutes}m)"
            )
    return Verdict(True, None)


def _fetch_github_commits_sync(
    connector: GitHubConnector,
    owner: str,
    repo: str,
    max_commits: int,
    all_branches: bool,
) -> List[RemoteCommit]:
    """Sync helper to fetch commits and release the connector."""
    try:
        return connector.list_commits(
            owner, repo, max_commits=max_commits, all_branches=all_branches
        )
    finally:
        connector.close()


class CommitIngestor:
    """
    Fetches commits for a team and stores them with a qualification verdict.

    Commits are processed oldest first and every cooldown lookup goes to the
    store, so a verdict only depends on what is already persisted.
    """

    def __init__(
        self,
        store,
        settings: Optional[Settings] = None,
        connector_factory: Optional[Callable[..., GitHubConnector]] = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.connector_factory = connector_factory or GitHubConnector

    async def qualify(self, team_id: str, commit: RemoteCommit) -> Verdict:
        last = await self.store.get_last_counted_commit(
            team_id, normalize_email(commit.author_email), commit.commit_date
        )
        return qualify_commit(
            commit.message,
            commit.commit_date,
            last.commit_date if last else None,
            min_message_length=self.settings.commit_min_message_length,
            cooldown_minutes=self.settings.commit_cooldown_minutes,
        )

    async def ingest(
        self, team_id: str, commits: List[RemoteCommit]
    ) -> CommitIngestResult:
        """
        Persist fetched commits for a team.

        A commit already stored keeps its verdict; only the branches it was
        seen on and its sync time are refreshed.
        """
        result = CommitIngestResult(fetched=len(commits))
        now = datetime.now(timezone.utc)

        for remote in sorted(commits, key=lambda c: (c.commit_date, c.hash)):
            try:
                existing = await self.store.get_commit(remote.hash)
                if existing is not None:
                    branches = list(existing.branches or [])
                    branches.extend(b for b in remote.branches if b not in branches)
                    await self.store.touch_commit(remote.hash, branches, now)
                    result.unchanged += 1
                    continue

                verdict = await self.qualify(team_id, remote)
                await self.store.upsert_commit(
                    Commit(
                        hash=remote.hash,
                        team_id=team_id,
                        author_email=normalize_email(remote.author_email),
                        author_name=remote.author_name,
                        message=remote.message,
                        commit_date=remote.commit_date,
                        url=remote.url,
                        branches=list(remote.branches),
                        is_counted=verdict.is_counted,
                        rejection_reason=verdict.reason,
                        synced_at=now,
                    )
                )
                result.inserted += 1
                if verdict.is_counted:
                    result.counted += 1
                else:
                    result.rejected += 1
            except Exception as e:
                logging.warning(f"Failed to store commit {remote.hash}: {e}")
                result.errors.append(f"commit {remote.hash[:12]}: {e}")

        logging.info(
            f"Team {team_id}: {result.inserted} new commit(s) "
            f"({result.counted} counted, {result.rejected} rejected), "
            f"{result.unchanged} already known"
        )
        return result

    async def sync_team(
        self, team: Team, credential: GithubCredential, repo_url: Optional[str] = None
    ) -> CommitIngestResult:
        """
        Fetch and ingest the team repository's recent commits.

        Fetch failures are reported in ``errors`` with an empty result.

        :raises ConfigurationError: If the team has no repository configured.
        :raises ValidationError: If the repository URL cannot be parsed.
        """
        repo_url = repo_url or team.github_repo_url
        if not repo_url:
            raise ConfigurationError(f"Team {team.id} has no GitHub repository")
        parsed = parse_repo_url(repo_url)
        if parsed is None:
            raise ValidationError(f"Invalid GitHub repository URL: {repo_url}")
        owner, repo = parsed

        connector = self.connector_factory(
            token=credential.access_token, timeout=self.settings.http_timeout_seconds
        )
        loop = asyncio.get_running_loop()
        try:
            commits = await loop.run_in_executor(
                None,
                _fetch_github_commits_sync,
                connector,
                owner,
                repo,
                self.settings.github_max_commits,
                self.settings.github_all_branches,
            )
        except ConnectorException as e:
            logging.error(f"Failed to fetch commits for {owner}/{repo}: {e}")
            return CommitIngestResult(errors=[f"github {owner}/{repo}: {e}"])

        return await self.ingest(team.id, commits)
