from unittest.mock import MagicMock

import pytest

from connectors.exceptions import ConnectorException
from connectors.models import AtlassianSite, ExternalAccount, OAuthToken
from models.credentials import GITHUB, JIRA
from models.teams import User
from teamsync.exceptions import (ConfigurationError, NotFoundError,
                                 ValidationError)
from teamsync.oauth import AccountLinker


@pytest.fixture
def github_oauth():
    client = MagicMock()
    client.exchange_code.return_value = OAuthToken(access_token="gho_new")
    client.authorize_url.return_value = "https://github.com/login/oauth/authorize?x=1"
    return client


@pytest.fixture
def github_connector():
    connector = MagicMock()
    connector.get_authenticated_user.return_value = ExternalAccount(
        account_id="4242", username="dana"
    )
    return connector


@pytest.fixture
def atlassian_oauth():
    client = MagicMock()
    client.exchange_code.return_value = OAuthToken(
        access_token="at-1", refresh_token="rt-1"
    )
    client.accessible_resources.return_value = [
        AtlassianSite(cloud_id="c1", url="https://acme.atlassian.net"),
        AtlassianSite(cloud_id="c2", url="https://other.atlassian.net"),
    ]
    client.me.return_value = ExternalAccount(
        account_id="acc-dev", email="dev@example.com"
    )
    return client


@pytest.fixture
def linker(store, credentials, github_oauth, atlassian_oauth, github_connector):
    factory = MagicMock(return_value=github_connector)
    return AccountLinker(
        store,
        credentials,
        github_oauth=github_oauth,
        atlassian_oauth=atlassian_oauth,
        github_factory=factory,
    )


class TestConnectGithub:
    """Test linking a GitHub account."""

    @pytest.mark.asyncio
    async def test_connect_saves_sealed_credential(
        self, store, linker, credentials, github_oauth, github_connector
    ):
        user = await store.insert_user(User(email="a@example.com", integrations={}))

        credential = await linker.connect_github(user.id, "code-1", "https://cb")

        github_oauth.exchange_code.assert_called_once_with("code-1", "https://cb")
        linker.github_factory.assert_called_once_with(token="gho_new")
        github_connector.close.assert_called_once()
        assert credential.account_id == "4242"
        assert credential.username == "dana"

        stored = await store.get_user(user.id)
        assert stored.integrations[GITHUB]["access_token"] != "gho_new"
        loaded = await credentials.load(user.id, GITHUB)
        assert loaded.access_token == "gho_new"

    @pytest.mark.asyncio
    async def test_rejected_code(self, store, linker, github_oauth):
        user = await store.insert_user(User(email="a@example.com", integrations={}))
        github_oauth.exchange_code.side_effect = ConnectorException(
            "GitHub token request failed: bad_verification_code", status=400
        )

        with pytest.raises(ValidationError):
            await linker.connect_github(user.id, "stale")
        assert (await store.get_user(user.id)).integrations == {}

    @pytest.mark.asyncio
    async def test_account_linked_to_another_user(self, store, linker):
        first = await store.insert_user(User(email="a@example.com", integrations={}))
        second = await store.insert_user(User(email="b@example.com", integrations={}))
        await linker.connect_github(first.id, "code-1")

        with pytest.raises(ValidationError, match="already linked"):
            await linker.connect_github(second.id, "code-2")

    @pytest.mark.asyncio
    async def test_reconnect_same_user_is_allowed(self, store, linker):
        user = await store.insert_user(User(email="a@example.com", integrations={}))
        await linker.connect_github(user.id, "code-1")
        credential = await linker.connect_github(user.id, "code-2")
        assert credential.account_id == "4242"

    @pytest.mark.asyncio
    async def test_unknown_user(self, linker, github_oauth):
        with pytest.raises(NotFoundError):
            await linker.connect_github("missing", "code-1")
        github_oauth.exchange_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_configured(self, store, credentials):
        linker = AccountLinker(store, credentials)
        with pytest.raises(ConfigurationError):
            await linker.connect_github("anyone", "code-1")
        with pytest.raises(ConfigurationError):
            linker.build_github_authorize_url("https://cb", "state")

    @pytest.mark.asyncio
    async def test_authorize_url_delegates(self, linker, github_oauth):
        url = linker.build_github_authorize_url("https://cb", "state-1")
        github_oauth.authorize_url.assert_called_once_with("https://cb", "state-1")
        assert url.startswith("https://github.com/")


class TestConnectJira:
    """Test linking an Atlassian account."""

    @pytest.mark.asyncio
    async def test_connect_uses_first_site(self, store, linker, credentials, atlassian_oauth):
        user = await store.insert_user(User(email="a@example.com", integrations={}))

        credential = await linker.connect_jira(user.id, "code-1", "https://cb")

        atlassian_oauth.exchange_code.assert_called_once_with("code-1", "https://cb")
        atlassian_oauth.accessible_resources.assert_called_once_with("at-1")
        atlassian_oauth.me.assert_called_once_with("at-1")
        assert credential.cloud_id == "c1"
        assert credential.site_url == "https://acme.atlassian.net"

        loaded = await credentials.load(user.id, JIRA)
        assert loaded.access_token == "at-1"
        assert loaded.refresh_token == "rt-1"
        assert loaded.account_id == "acc-dev"

    @pytest.mark.asyncio
    async def test_no_accessible_site(self, store, linker, atlassian_oauth):
        user = await store.insert_user(User(email="a@example.com", integrations={}))
        atlassian_oauth.accessible_resources.return_value = []

        with pytest.raises(ValidationError, match="No Jira site"):
            await linker.connect_jira(user.id, "code-1", "https://cb")
        assert (await store.get_user(user.id)).integrations == {}

    @pytest.mark.asyncio
    async def test_account_linked_to_another_user(self, store, linker):
        first = await store.insert_user(User(email="a@example.com", integrations={}))
        second = await store.insert_user(User(email="b@example.com", integrations={}))
        await linker.connect_jira(first.id, "code-1", "https://cb")

        with pytest.raises(ValidationError):
            await linker.connect_jira(second.id, "code-2", "https://cb")

    @pytest.mark.asyncio
    async def test_identity_lookup_failure(self, store, linker, atlassian_oauth):
        user = await store.insert_user(User(email="a@example.com", integrations={}))
        atlassian_oauth.me.side_effect = ConnectorException("no account id")

        with pytest.raises(ValidationError):
            await linker.connect_jira(user.id, "code-1", "https://cb")


class TestDisconnect:
    """Test removing a linked account."""

    @pytest.mark.asyncio
    async def test_disconnect_removes_only_that_provider(self, store, linker, credentials):
        user = await store.insert_user(User(email="a@example.com", integrations={}))
        await linker.connect_github(user.id, "code-1")
        await linker.connect_jira(user.id, "code-2", "https://cb")

        await linker.disconnect(user.id, GITHUB)

        assert await credentials.load(user.id, GITHUB) is None
        assert await credentials.load(user.id, JIRA) is not None

    @pytest.mark.asyncio
    async def test_unknown_provider(self, linker):
        with pytest.raises(ValidationError):
            await linker.disconnect("anyone", "gitlab")
