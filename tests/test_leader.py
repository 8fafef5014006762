from unittest.mock import AsyncMock, MagicMock

import pytest

from connectors.models import ProjectLead
from models.credentials import JiraCredential
from models.teams import ROLE_LEADER, ROLE_MEMBER, Team, TeamMember, User
from processors.leader import reconcile_team_leader
from teamsync.exceptions import ConfigurationError, NotFoundError, ValidationError


def _jira(lead):
    jira = MagicMock()
    jira.call = AsyncMock(return_value=lead)
    return jira


async def _roles(store, team_id):
    return {m.id: m.role for m in await store.list_members(team_id)}


class TestReconcileTeamLeader:
    """Test promotion of the Jira project lead to team Leader."""

    @pytest.mark.asyncio
    async def test_lead_matched_through_mapping(self, store, identity, team_setup):
        jira = _jira(ProjectLead(account_id="acc-dev", display_name="Dana Dev"))

        result = await reconcile_team_leader(
            store, identity, jira, team_setup.team.id, team_setup.leader_user.id
        )

        assert result.updated is True
        assert result.leader_member_id == team_setup.dev.id
        assert result.lead_name == "Dana Dev"
        jira.call.assert_awaited_once_with(
            team_setup.leader_user.id, "get_project_lead", "ALPHA"
        )
        roles = await _roles(store, team_setup.team.id)
        assert roles[team_setup.dev.id] == ROLE_LEADER
        assert roles[team_setup.leader.id] == ROLE_MEMBER

    @pytest.mark.asyncio
    async def test_exactly_one_leader_after_reconcile(self, store, identity, team_setup):
        jira = _jira(ProjectLead(account_id="acc-lead"))

        result = await reconcile_team_leader(
            store, identity, jira, team_setup.team.id, team_setup.leader_user.id
        )

        assert result.leader_member_id == team_setup.leader.id
        roles = await _roles(store, team_setup.team.id)
        assert list(roles.values()).count(ROLE_LEADER) == 1

    @pytest.mark.asyncio
    async def test_lead_matched_through_linked_account(
        self, store, identity, credentials, team_setup
    ):
        newcomer = await store.insert_user(
            User(email="new@example.com", full_name="Nia New", integrations={})
        )
        await credentials.save(
            newcomer.id,
            JiraCredential(access_token="at", account_id="acc-new", cloud_id="c1"),
        )
        member = await store.insert_member(
            TeamMember(
                team_id=team_setup.team.id,
                user_id=newcomer.id,
                project_id=team_setup.project.id,
                role=ROLE_MEMBER,
            )
        )
        jira = _jira(ProjectLead(account_id="acc-new", display_name="Nia New"))

        result = await reconcile_team_leader(
            store, identity, jira, team_setup.team.id, team_setup.leader_user.id
        )

        assert result.updated is True
        assert result.leader_member_id == member.id
        roles = await _roles(store, team_setup.team.id)
        assert roles[member.id] == ROLE_LEADER
        assert roles[team_setup.leader.id] == ROLE_MEMBER

    @pytest.mark.asyncio
    async def test_lead_outside_team_changes_nothing(self, store, identity, team_setup):
        jira = _jira(ProjectLead(account_id="acc-stranger", display_name="Sam"))

        result = await reconcile_team_leader(
            store, identity, jira, team_setup.team.id, team_setup.leader_user.id
        )

        assert result.updated is False
        assert result.reason == "lead is not a team member"
        assert result.lead_account_id == "acc-stranger"
        roles = await _roles(store, team_setup.team.id)
        assert roles[team_setup.leader.id] == ROLE_LEADER

    @pytest.mark.asyncio
    async def test_project_without_lead(self, store, identity, team_setup):
        jira = _jira(ProjectLead(account_id=None))

        result = await reconcile_team_leader(
            store, identity, jira, team_setup.team.id, team_setup.leader_user.id
        )

        assert result.updated is False
        assert result.reason == "project has no lead"

    @pytest.mark.asyncio
    async def test_unknown_team(self, store, identity):
        jira = _jira(ProjectLead(account_id="acc-dev"))
        with pytest.raises(NotFoundError):
            await reconcile_team_leader(store, identity, jira, "missing", "user")
        jira.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_team_without_project_key(self, store, identity, team_setup):
        team = await store.insert_team(
            Team(name="Beta", jira_board_id=8, sync_history=[])
        )
        jira = _jira(ProjectLead(account_id="acc-dev"))
        with pytest.raises(ConfigurationError):
            await reconcile_team_leader(
                store, identity, jira, team.id, team_setup.leader_user.id
            )

    @pytest.mark.asyncio
    async def test_invalid_project_key(self, store, identity, team_setup):
        team = await store.insert_team(
            Team(name="Gamma", jira_project_key="bad key!", sync_history=[])
        )
        jira = _jira(ProjectLead(account_id="acc-dev"))
        with pytest.raises(ValidationError):
            await reconcile_team_leader(
                store, identity, jira, team.id, team_setup.leader_user.id
            )
        jira.call.assert_not_awaited()
