"""Shared test fixtures for the test suite."""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio

from models.teams import ROLE_LEADER, ROLE_MEMBER, Project, Team, TeamMember, User
from storage import SQLAlchemyStore
from teamsync.config import Settings
from teamsync.credentials import CredentialService
from teamsync.identity import IdentityMapper
from teamsync.vault import CredentialVault

TEST_KEY = "0123456789abcdef" * 4
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def t0():
    """Reference timestamp used by time-dependent tests."""
    return T0


@pytest.fixture
def settings():
    """Default settings with a fixed encryption key."""
    return Settings(encryption_key=TEST_KEY)


@pytest.fixture
def vault():
    """Vault with a deterministic key."""
    return CredentialVault(TEST_KEY)


@pytest_asyncio.fixture
async def store(tmp_path):
    """SQLAlchemyStore on a temporary SQLite file with the schema created."""
    sqlite_store = SQLAlchemyStore(f"sqlite+aiosqlite:///{tmp_path / 'teamsync.db'}")
    async with sqlite_store:
        yield sqlite_store


@pytest.fixture
def credentials(store, vault):
    return CredentialService(store, vault)


@pytest.fixture
def identity(store):
    return IdentityMapper(store)


@pytest_asyncio.fixture
async def team_setup(store):
    """
    One team with a Jira project, a Leader and a Member.

    The Leader joined first so member enumeration order is deterministic.
    """
    team = await store.insert_team(
        Team(
            name="Alpha",
            github_repo_url="https://github.com/acme/alpha.git",
            jira_board_id=7,
            jira_project_key="ALPHA",
            sync_history=[],
        )
    )
    project = await store.insert_project(
        Project(name="Alpha", team_id=team.id, jira_project_key="ALPHA")
    )
    leader_user = await store.insert_user(
        User(email="Lead@Example.com", full_name="Lee Leader", integrations={})
    )
    dev_user = await store.insert_user(
        User(email="dev@example.com", full_name="Dana Dev", integrations={})
    )
    leader = await store.insert_member(
        TeamMember(
            team_id=team.id,
            user_id=leader_user.id,
            project_id=project.id,
            role=ROLE_LEADER,
            jira_account_id="acc-lead",
            github_username="lee",
            joined_at=T0 - timedelta(days=10),
        )
    )
    dev = await store.insert_member(
        TeamMember(
            team_id=team.id,
            user_id=dev_user.id,
            project_id=project.id,
            role=ROLE_MEMBER,
            jira_account_id="acc-dev",
            github_username="dana",
            joined_at=T0 - timedelta(days=9),
        )
    )
    return SimpleNamespace(
        team=team,
        project=project,
        leader_user=leader_user,
        dev_user=dev_user,
        leader=leader,
        dev=dev,
    )
