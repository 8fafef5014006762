import asyncio
import functools
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from connectors import ConnectorException, JiraConnector
from connectors.models import RemoteIssue, RemoteSprint
from connectors.normalize import jira_issue_payload_to_remote
from models.teams import (DEFAULT_SPRINT_EXTERNAL_ID, DEFAULT_SPRINT_NAME,
                          Project, Sprint, Task, Team)
from teamsync.config import Settings
from teamsync.exceptions import (ConfigurationError, TeamSyncError,
                                 ValidationError)
from teamsync.identity import IdentityMapper
from teamsync.realtime import (TASK_UPDATED_EVENT, NullPublisher, Publisher,
                               team_scope)
from teamsync.tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)

PROJECT_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")

WEBHOOK_ACTIONS = {
    "jira:issue_created": "created",
    "jira:issue_updated": "updated",
    "jira:issue_deleted": "deleted",
}


def validate_board_id(board_id: Any) -> int:
    """Return the board id as a positive int or raise ValidationError."""
    if isinstance(board_id, bool):
        raise ValidationError(f"Invalid Jira board id: {board_id!r}")
    try:
        value = int(board_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid Jira board id: {board_id!r}")
    if value <= 0 or str(value) != str(board_id).strip():
        raise ValidationError(f"Invalid Jira board id: {board_id!r}")
    return value


def validate_project_key(project_key: Any) -> str:
    if not isinstance(project_key, str) or not PROJECT_KEY_PATTERN.match(project_key):
        raise ValidationError(f"Invalid Jira project key: {project_key!r}")
    return project_key


@dataclass
class JiraSyncResult:
    sprints: int = 0
    tasks: int = 0
    created: int = 0
    updated: int = 0
    removed: int = 0
    errors: List[str] = field(default_factory=list)

    def add(self, action: str) -> None:
        self.tasks += 1
        if action == "created":
            self.created += 1
        else:
            self.updated += 1


@dataclass
class _SprintPass:
    result: JiraSyncResult
    sprint_id: Optional[str] = None
    issue_ids: List[str] = field(default_factory=list)


@dataclass
class WebhookAck:
    """Outcome of one webhook delivery; always a success for the sender."""

    handled: bool
    event: Optional[str] = None
    action: Optional[str] = None
    team_id: Optional[str] = None
    issue_key: Optional[str] = None
    reason: Optional[str] = None


class JiraSync:
    """
    Full and webhook-driven synchronization of sprints and tasks.

    Connector calls run in the default executor through the token lifecycle
    manager. Every task mutation is published to ``team:<id>``.
    """

    def __init__(
        self,
        store,
        identity: IdentityMapper,
        tokens: TokenLifecycleManager,
        publisher: Optional[Publisher] = None,
        settings: Optional[Settings] = None,
        connector_factory: Optional[Callable[..., JiraConnector]] = None,
    ):
        self.store = store
        self.identity = identity
        self.tokens = tokens
        self.publisher = publisher or NullPublisher()
        self.settings = settings or Settings()
        self.connector_factory = connector_factory or JiraConnector

    async def call(self, user_id: str, method: str, *args: Any) -> Any:
        """Invoke a JiraConnector method with the user's (refreshable) token."""
        loop = asyncio.get_running_loop()

        async def work(credential):
            if not credential.cloud_id:
                raise ConfigurationError("Jira credential has no cloud id; reconnect Jira")
            connector = self.connector_factory(
                access_token=credential.access_token,
                cloud_id=credential.cloud_id,
                story_point_field=self.settings.jira_story_point_field,
                timeout=self.settings.http_timeout_seconds,
            )
            return await loop.run_in_executor(
                None, functools.partial(getattr(connector, method), *args)
            )

        return await self.tokens.run(user_id, work)

    def _emit(self, team_id: str, action: str, task: Task, project_id: Optional[str]):
        self.publisher.emit(
            team_scope(team_id),
            TASK_UPDATED_EVENT,
            {
                "action": action,
                "issue_key": task.issue_key,
                "issue_id": task.issue_id,
                "project_id": project_id,
            },
        )

    async def default_sprint(self, team_id: str) -> Sprint:
        """The team's catch-all sprint for issues without sprint context."""
        return await self.store.get_or_create_sprint(
            Sprint(
                team_id=team_id,
                jira_sprint_id=DEFAULT_SPRINT_EXTERNAL_ID,
                name=DEFAULT_SPRINT_NAME,
                state="active",
            )
        )

    async def upsert_issue(
        self,
        team_id: str,
        sprint_id: Optional[str],
        issue: RemoteIssue,
        project_id: Optional[str] = None,
    ) -> str:
        """
        Store one issue as a task and publish the change.

        :return: ``"created"`` or ``"updated"``.
        """
        existing = await self.store.get_task(issue.issue_id)
        member = await self.identity.resolve(team_id, issue.assignee_account_id)
        task = Task(
            issue_id=issue.issue_id,
            issue_key=issue.issue_key,
            team_id=team_id,
            sprint_id=sprint_id,
            assignee_id=member.id if member else None,
            assignee_account_id=issue.assignee_account_id,
            assignee_name=issue.assignee_name,
            summary=issue.summary,
            status_name=issue.status_name,
            status_category=issue.status_category,
            story_point=issue.story_point or 0.0,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            synced_at=datetime.now(timezone.utc),
        )
        await self.store.upsert_task(task)
        action = "updated" if existing is not None else "created"
        self._emit(team_id, action, task, project_id)
        return action

    async def _sync_sprint(
        self,
        team_id: str,
        user_id: str,
        remote: RemoteSprint,
        project_id: Optional[str],
        semaphore: asyncio.Semaphore,
    ) -> _SprintPass:
        sprint_pass = _SprintPass(result=JiraSyncResult())
        result = sprint_pass.result
        async with semaphore:
            try:
                sprint = await self.store.upsert_sprint(
                    Sprint(
                        team_id=team_id,
                        jira_sprint_id=remote.id,
                        name=remote.name,
                        state=remote.state,
                        start_date=remote.start_date,
                        end_date=remote.end_date,
                    )
                )
                result.sprints += 1
                sprint_pass.sprint_id = sprint.id
            except Exception as e:
                logger.warning(f"Failed to store sprint {remote.id}: {e}")
                result.errors.append(f"sprint {remote.id}: {e}")
                return sprint_pass

            try:
                issues = await self.call(user_id, "list_sprint_issues", remote.id)
            except ConnectorException as e:
                logger.warning(f"Failed to fetch issues for sprint {remote.id}: {e}")
                result.errors.append(f"sprint {remote.id} issues: {e}")
                return sprint_pass

            for issue in issues:
                try:
                    action = await self.upsert_issue(team_id, sprint.id, issue, project_id)
                except Exception as e:
                    logger.warning(f"Failed to store task {issue.issue_key}: {e}")
                    result.errors.append(f"task {issue.issue_key}: {e}")
                    continue
                result.add(action)
                sprint_pass.issue_ids.append(issue.issue_id)
        return sprint_pass

    async def _sync_project_issues(
        self,
        team_id: str,
        user_id: str,
        project_key: str,
        project_id: Optional[str],
        sprint_ids: Dict[int, str],
        seen: Set[str],
        result: JiraSyncResult,
    ) -> bool:
        """
        Store project issues the sprint pass did not cover.

        Issues outside any known sprint go to the default sprint.

        :return: False when the project search failed.
        """
        try:
            issues = await self.call(user_id, "search_project_issues", project_key)
        except ConnectorException as e:
            logger.warning(f"Failed to search issues of project {project_key}: {e}")
            result.errors.append(f"project {project_key} issues: {e}")
            return False

        default_id: Optional[str] = None
        for issue in issues:
            if issue.issue_id in seen:
                continue
            try:
                sprint_id = sprint_ids.get(issue.sprint_id) if issue.sprint_id else None
                if sprint_id is None:
                    if default_id is None:
                        default_id = (await self.default_sprint(team_id)).id
                    sprint_id = default_id
                action = await self.upsert_issue(team_id, sprint_id, issue, project_id)
            except Exception as e:
                logger.warning(f"Failed to store task {issue.issue_key}: {e}")
                result.errors.append(f"task {issue.issue_key}: {e}")
                continue
            result.add(action)
            seen.add(issue.issue_id)
        return True

    async def _prune(
        self,
        team_id: str,
        project_id: Optional[str],
        sprint_ids: Optional[Dict[int, str]],
        issue_ids: Optional[Set[str]],
    ) -> int:
        """
        Drop sprints and tasks that no longer exist in Jira.

        ``None`` means the corresponding listing was not complete and
        nothing of that kind is removed.
        """
        removed: List[Task] = []
        if issue_ids is not None:
            removed.extend(await self.store.delete_tasks_not_in(team_id, list(issue_ids)))
        if sprint_ids is not None:
            stale = [
                s.id
                for s in await self.store.list_sprints(team_id)
                if s.jira_sprint_id != DEFAULT_SPRINT_EXTERNAL_ID
                and s.jira_sprint_id not in sprint_ids
            ]
            for task in await self.store.list_tasks_for_sprints(stale):
                await self.store.delete_task(task.issue_id)
                removed.append(task)
            dropped = await self.store.delete_sprints_not_in(team_id, list(sprint_ids))
            if dropped:
                logger.info(f"Team {team_id}: removed {len(dropped)} sprint(s) gone from Jira")
        for task in removed:
            self._emit(team_id, "deleted", task, project_id)
        if removed:
            logger.info(f"Team {team_id}: removed {len(removed)} task(s) gone from Jira")
        return len(removed)

    async def sync_team(
        self,
        team: Team,
        user_id: str,
        board_id: Any = None,
        project_key: Optional[str] = None,
    ) -> JiraSyncResult:
        """
        Fetch every sprint of the team's board and the tasks inside each,
        then every remaining project issue (the backlog).

        Without a board id the board is looked up from the project key. A
        pass with no errors removes sprints and tasks that are gone from
        Jira. Failures of a single sprint or task are recorded in
        ``errors``; losing the credential aborts the whole pass.

        :raises ConfigurationError: If neither a board nor a project is configured.
        :raises ValidationError: If the board id or project key is malformed.
        """
        board_id = board_id if board_id is not None else team.jira_board_id
        project_key = project_key or team.jira_project_key
        if board_id is None and not project_key:
            raise ConfigurationError(f"Team {team.id} has no Jira board or project configured")
        if board_id is not None:
            board_id = validate_board_id(board_id)
        project_id = None
        if project_key:
            validate_project_key(project_key)
            project = await self.store.find_project_by_jira_key(project_key)
            project_id = project.id if project else None
            if board_id is None:
                board_id = await self.call(user_id, "find_board_id", project_key)

        result = JiraSyncResult()
        sprint_ids: Dict[int, str] = {}
        seen: Set[str] = set()
        if board_id is not None:
            remote_sprints = await self.call(user_id, "list_sprints", board_id)
            semaphore = asyncio.Semaphore(max(1, self.settings.jira_max_concurrent_sprints))
            outcomes = await asyncio.gather(
                *(
                    self._sync_sprint(team.id, user_id, remote, project_id, semaphore)
                    for remote in remote_sprints
                ),
                return_exceptions=True,
            )

            fatal: Optional[BaseException] = None
            for remote, outcome in zip(remote_sprints, outcomes):
                if isinstance(outcome, TeamSyncError):
                    fatal = fatal or outcome
                    continue
                if isinstance(outcome, BaseException):
                    result.errors.append(f"sprint {remote.id}: {outcome}")
                    continue
                if outcome.sprint_id is not None:
                    sprint_ids[remote.id] = outcome.sprint_id
                seen.update(outcome.issue_ids)
                result.sprints += outcome.result.sprints
                result.tasks += outcome.result.tasks
                result.created += outcome.result.created
                result.updated += outcome.result.updated
                result.errors.extend(outcome.result.errors)
            if fatal is not None:
                raise fatal
        else:
            logger.info(f"Project {project_key} has no board; syncing backlog issues only")

        searched = False
        if project_key:
            searched = await self._sync_project_issues(
                team.id, user_id, project_key, project_id, sprint_ids, seen, result
            )

        if result.errors:
            logger.warning(f"Team {team.id}: sync had errors, keeping stale sprints and tasks")
        else:
            result.removed = await self._prune(
                team.id,
                project_id,
                sprint_ids if board_id is not None else None,
                seen if searched else None,
            )

        logger.info(
            f"Team {team.id}: synced {result.sprints} sprint(s), {result.tasks} task(s), "
            f"removed {result.removed} from board {board_id} "
            f"with {len(result.errors)} error(s)"
        )
        return result

    async def _resolve_team(self, project_key: str) -> Tuple[Optional[str], Optional[Project]]:
        project = await self.store.find_project_by_jira_key(project_key)
        if project is None:
            return None, None
        member = await self.store.find_active_member_by_project(project.id)
        if member is not None:
            return member.team_id, project
        return project.team_id, project

    async def _sprint_for_event(self, team_id: str, issue: RemoteIssue) -> str:
        if issue.sprint_id is not None:
            sprint = await self.store.get_sprint_by_external(team_id, issue.sprint_id)
            if sprint is not None:
                return sprint.id
        existing = await self.store.get_task(issue.issue_id)
        if existing is not None and existing.sprint_id:
            return existing.sprint_id
        return (await self.default_sprint(team_id)).id

    async def handle_webhook(self, payload: Dict[str, Any]) -> WebhookAck:
        """
        Apply one Jira issue webhook.

        Never raises: unknown events, unknown projects and processing
        failures are logged and acknowledged so the sender does not retry.
        """
        event = payload.get("webhookEvent") if isinstance(payload, dict) else None
        try:
            return await self._handle_webhook(event, payload)
        except Exception as e:
            logger.exception(f"Failed to process Jira webhook {event}: {e}")
            return WebhookAck(handled=False, event=event, reason=f"error: {e}")

    async def _handle_webhook(self, event: Optional[str], payload: Dict[str, Any]) -> WebhookAck:
        action = WEBHOOK_ACTIONS.get(event or "")
        if action is None:
            logger.info(f"Ignoring unsupported Jira webhook event {event!r}")
            return WebhookAck(handled=False, event=event, reason="unsupported event")

        issue_payload = payload.get("issue") or {}
        issue_id = issue_payload.get("id")
        issue_key = issue_payload.get("key")
        if not issue_id or not issue_key:
            logger.warning(f"Jira webhook {event} has no issue id or key")
            return WebhookAck(handled=False, event=event, reason="missing issue")

        fields = issue_payload.get("fields") or {}
        project_key = (fields.get("project") or {}).get("key") or str(issue_key).rsplit("-", 1)[0]
        team_id, project = await self._resolve_team(project_key)
        if team_id is None:
            logger.info(f"Ignoring Jira webhook for unmapped project {project_key}")
            return WebhookAck(
                handled=False, event=event, issue_key=issue_key, reason="unknown project"
            )
        project_id = project.id if project else None

        if action == "deleted":
            existing = await self.store.get_task(str(issue_id))
            if existing is None:
                logger.info(f"Jira issue {issue_key} deleted but was never stored")
                return WebhookAck(
                    handled=True,
                    event=event,
                    team_id=team_id,
                    issue_key=issue_key,
                    reason="unknown issue",
                )
            await self.store.delete_task(existing.issue_id)
            self._emit(team_id, "deleted", existing, project_id)
            logger.info(f"Deleted task {issue_key} for team {team_id}")
            return WebhookAck(
                handled=True,
                event=event,
                action="deleted",
                team_id=team_id,
                issue_key=issue_key,
            )

        issue = jira_issue_payload_to_remote(
            issue_payload, self.settings.jira_story_point_field
        )
        sprint_id = await self._sprint_for_event(team_id, issue)
        stored_action = await self.upsert_issue(team_id, sprint_id, issue, project_id)
        logger.info(f"Task {issue_key} {stored_action} for team {team_id} via webhook")
        return WebhookAck(
            handled=True,
            event=event,
            action=stored_action,
            team_id=team_id,
            issue_key=issue_key,
        )
