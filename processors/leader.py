import logging
from dataclasses import dataclass
from typing import Optional

from models.credentials import JIRA
from processors.jira import JiraSync, validate_project_key
from teamsync.exceptions import ConfigurationError, NotFoundError
from teamsync.identity import IdentityMapper

logger = logging.getLogger(__name__)


@dataclass
class LeaderSyncResult:
    updated: bool
    leader_member_id: Optional[str] = None
    lead_account_id: Optional[str] = None
    lead_name: Optional[str] = None
    reason: Optional[str] = None


async def reconcile_team_leader(
    store,
    identity: IdentityMapper,
    jira: JiraSync,
    team_id: str,
    user_id: str,
) -> LeaderSyncResult:
    """
    Make the Jira project lead the team's only Leader.

    The lead is matched through the identity mapping first, then through a
    member whose user linked the same Atlassian account. Nothing changes
    when the lead is not a member of the team.

    :raises NotFoundError: If the team does not exist.
    :raises ConfigurationError: If the team has no Jira project key.
    """
    team = await store.get_team(team_id)
    if team is None:
        raise NotFoundError(f"Team {team_id} not found")
    if not team.jira_project_key:
        raise ConfigurationError(f"Team {team_id} has no Jira project key")
    project_key = validate_project_key(team.jira_project_key)

    lead = await jira.call(user_id, "get_project_lead", project_key)
    if not lead.account_id:
        return LeaderSyncResult(updated=False, reason="project has no lead")

    member = await identity.resolve(team_id, lead.account_id)
    if member is None:
        user = await store.find_user_by_integration(JIRA, lead.account_id)
        if user is not None:
            members = await store.list_members(team_id)
            member = next((m for m in members if m.user_id == user.id), None)

    if member is None:
        logger.info(
            f"Jira lead {lead.display_name or lead.account_id} of {project_key} "
            f"is not a member of team {team_id}"
        )
        return LeaderSyncResult(
            updated=False,
            lead_account_id=lead.account_id,
            lead_name=lead.display_name,
            reason="lead is not a team member",
        )

    await store.set_team_leader(team_id, member.id)
    logger.info(f"Team {team_id} leader set to member {member.id} from {project_key}")
    return LeaderSyncResult(
        updated=True,
        leader_member_id=member.id,
        lead_account_id=lead.account_id,
        lead_name=lead.display_name,
    )
