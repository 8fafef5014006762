"""
Wiring of the sync services around one store.

Both the API and the CLI build a ``Services`` bundle through
``build_services`` or ``open_services``.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from connectors.oauth import AtlassianOAuthClient, GitHubOAuthClient
from metrics.contributions import load_team_dashboard, load_team_ranking
from metrics.schemas import DashboardSummary, MemberContribution
from processors.commits import CommitIngestor
from processors.jira import JiraSync
from processors.leader import LeaderSyncResult, reconcile_team_leader
from processors.orchestrator import SyncOrchestrator
from storage import create_store
from teamsync.config import Settings
from teamsync.credentials import CredentialService
from teamsync.identity import IdentityMapper
from teamsync.oauth import AccountLinker
from teamsync.realtime import InMemoryBroadcaster, Publisher
from teamsync.tokens import TokenLifecycleManager
from teamsync.vault import CredentialVault


@dataclass
class Services:
    settings: Settings
    store: object
    vault: CredentialVault
    credentials: CredentialService
    identity: IdentityMapper
    tokens: TokenLifecycleManager
    publisher: Publisher
    commits: CommitIngestor
    jira: JiraSync
    orchestrator: SyncOrchestrator
    accounts: AccountLinker

    async def reconcile_leader(self, team_id: str, user_id: str) -> LeaderSyncResult:
        return await reconcile_team_leader(
            self.store, self.identity, self.jira, team_id, user_id
        )

    async def ranking(self, team_id: str) -> List[MemberContribution]:
        return await load_team_ranking(self.store, team_id)

    async def dashboard(self, team_id: str) -> DashboardSummary:
        return await load_team_dashboard(self.store, team_id)


def build_services(
    settings: Settings, store, publisher: Optional[Publisher] = None
) -> Services:
    """
    Assemble every service over an opened store.

    OAuth clients are only created when their client id and secret are set;
    without the Atlassian client an expired Jira token cannot be refreshed.
    """
    vault = CredentialVault(settings.encryption_key)
    credentials = CredentialService(store, vault)
    identity = IdentityMapper(store)

    atlassian_oauth = None
    if settings.atlassian_client_id and settings.atlassian_client_secret:
        atlassian_oauth = AtlassianOAuthClient(
            settings.atlassian_client_id,
            settings.atlassian_client_secret,
            timeout=settings.http_timeout_seconds,
        )
    github_oauth = None
    if settings.github_client_id and settings.github_client_secret:
        github_oauth = GitHubOAuthClient(
            settings.github_client_id,
            settings.github_client_secret,
            timeout=settings.http_timeout_seconds,
        )

    publisher = publisher or InMemoryBroadcaster()
    tokens = TokenLifecycleManager(credentials, atlassian_oauth)
    commits = CommitIngestor(store, settings)
    jira = JiraSync(store, identity, tokens, publisher, settings)
    orchestrator = SyncOrchestrator(store, credentials, commits, jira, settings)
    accounts = AccountLinker(store, credentials, github_oauth, atlassian_oauth)
    return Services(
        settings=settings,
        store=store,
        vault=vault,
        credentials=credentials,
        identity=identity,
        tokens=tokens,
        publisher=publisher,
        commits=commits,
        jira=jira,
        orchestrator=orchestrator,
        accounts=accounts,
    )


@asynccontextmanager
async def open_services(
    settings: Settings, publisher: Optional[Publisher] = None
) -> AsyncIterator[Services]:
    store = create_store(settings.db_url, db_name=settings.mongo_db_name)
    async with store:
        yield build_services(settings, store, publisher)
