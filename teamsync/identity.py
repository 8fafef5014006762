"""
External identity mapping between team members and their Jira/GitHub accounts.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from models.teams import TeamMember
from teamsync.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class MappingUpdate:
    member: TeamMember
    relinked: int = 0
    unlinked: int = 0


class IdentityMapper:
    """
    Resolves external account ids to active members of one team.

    Resolution always reads durable state, so a changed mapping is picked
    up by the next lookup without any cache to invalidate.
    """

    def __init__(self, store):
        self.store = store

    async def resolve(
        self, team_id: str, account_id: Optional[str]
    ) -> Optional[TeamMember]:
        if not team_id or not account_id:
            return None
        return await self.store.find_member_by_jira_account(team_id, account_id)

    async def resolve_many(
        self, team_id: str, account_ids: List[Optional[str]]
    ) -> Dict[str, Optional[str]]:
        """Map each distinct account id to a member id (or None)."""
        resolved: Dict[str, Optional[str]] = {}
        for account_id in account_ids:
            if not account_id or account_id in resolved:
                continue
            member = await self.resolve(team_id, account_id)
            resolved[account_id] = member.id if member else None
        return resolved

    async def set_mapping(
        self,
        member_id: str,
        jira_account_id: Optional[str] = None,
        github_username: Optional[str] = None,
    ) -> MappingUpdate:
        """
        Update a member's external identities and re-link existing tasks.

        Tasks in the member's team that carry the new Jira account id are
        linked to the member. Tasks still linked to the member under another
        account id are resolved again, which usually clears the link.

        :raises ValidationError: If neither field is given, or the Jira
            account already belongs to another active member of the team.
        :raises NotFoundError: If the member does not exist.
        """
        jira_account_id = (jira_account_id or "").strip() or None
        github_username = (github_username or "").strip() or None
        if jira_account_id is None and github_username is None:
            raise ValidationError("Provide jira_account_id or github_username")

        member = await self.store.get_member(member_id)
        if member is None:
            raise NotFoundError(f"Team member {member_id} not found")

        values = {}
        if jira_account_id is not None:
            holder = await self.store.find_member_by_jira_account(
                member.team_id, jira_account_id
            )
            if holder is not None and holder.id != member.id:
                raise ValidationError(
                    f"Jira account {jira_account_id} is already mapped "
                    f"to member {holder.id}"
                )
            values["jira_account_id"] = jira_account_id
        if github_username is not None:
            values["github_username"] = github_username

        await self.store.update_member(member.id, **values)
        for key, value in values.items():
            setattr(member, key, value)

        result = MappingUpdate(member=member)
        if jira_account_id is not None:
            result.relinked, result.unlinked = await self._relink_tasks(
                member, jira_account_id
            )
        logger.info(
            f"Updated mapping for member {member.id}: "
            f"{result.relinked} task(s) linked, {result.unlinked} re-resolved"
        )
        return result

    async def _relink_tasks(self, member: TeamMember, account_id: str):
        sprints = await self.store.list_sprints(member.team_id)
        sprint_ids = [sprint.id for sprint in sprints]
        tasks = await self.store.list_tasks_for_relink(sprint_ids, account_id, member.id)

        to_link = [
            t.issue_id
            for t in tasks
            if t.assignee_account_id == account_id and t.assignee_id != member.id
        ]
        stale = [
            t
            for t in tasks
            if t.assignee_id == member.id and t.assignee_account_id != account_id
        ]

        relinked = await self.store.set_task_assignee(to_link, member.id)

        unlinked = 0
        for task in stale:
            other = await self.resolve(member.team_id, task.assignee_account_id)
            unlinked += await self.store.set_task_assignee(
                [task.issue_id], other.id if other else None
            )
        return relinked, unlinked
