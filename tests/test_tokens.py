import asyncio
import gc
from unittest.mock import MagicMock

import pytest

from connectors.exceptions import (APIException, AuthenticationException,
                                   ConnectorException)
from connectors.models import OAuthToken
from models.credentials import GITHUB, JIRA, GithubCredential, JiraCredential
from teamsync.exceptions import (NotConnectedError,
                                 ReauthorizationRequiredError,
                                 RefreshTokenMissingError,
                                 RefreshTokenRejectedError)
from teamsync.tokens import TokenLifecycleManager


async def _connect_jira(credentials, user_id, access="at-1", refresh="rt-1"):
    await credentials.save(
        user_id,
        JiraCredential(
            access_token=access,
            refresh_token=refresh,
            account_id="acc-lead",
            cloud_id="cloud-1",
        ),
    )


def _oauth(access="at-2", refresh="rt-2"):
    client = MagicMock()
    client.refresh.return_value = OAuthToken(access_token=access, refresh_token=refresh)
    return client


class TestCredentialService:
    """Sealed credential records on the user."""

    @pytest.mark.asyncio
    async def test_tokens_are_sealed_at_rest(self, store, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)

        record = (await store.get_user(user_id)).integrations[JIRA]
        assert record["access_token"] != "at-1"
        assert record["refresh_token"] != "rt-1"
        assert record["cloud_id"] == "cloud-1"

        loaded = await credentials.load(user_id, JIRA)
        assert loaded.access_token == "at-1"
        assert loaded.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_unreadable_record_means_reconnect(self, store, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await store.update_user_integrations(
            user_id, {GITHUB: {"access_token": "not:a:token", "account_id": "1"}}
        )
        assert await credentials.load(user_id, GITHUB) is None

    @pytest.mark.asyncio
    async def test_invalidate(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await credentials.save(user_id, GithubCredential(access_token="gho", account_id="1"))
        await credentials.invalidate(user_id, GITHUB)
        assert await credentials.load(user_id, GITHUB) is None


class TestTokenLifecycleManager:
    """Detect-401, refresh once, retry once."""

    @pytest.mark.asyncio
    async def test_not_connected(self, credentials, team_setup):
        manager = TokenLifecycleManager(credentials, _oauth())

        async def work(credential):
            return "never"

        with pytest.raises(NotConnectedError):
            await manager.run(team_setup.leader_user.id, work)

    @pytest.mark.asyncio
    async def test_success_without_refresh(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)
        oauth = _oauth()
        manager = TokenLifecycleManager(credentials, oauth)

        async def work(credential):
            return credential.access_token

        assert await manager.run(user_id, work) == "at-1"
        oauth.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_401_refreshes_and_retries_once(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)
        oauth = _oauth()
        manager = TokenLifecycleManager(credentials, oauth)
        seen = []

        async def work(credential):
            seen.append(credential.access_token)
            if credential.access_token == "at-1":
                raise AuthenticationException("expired", status=401)
            return "ok"

        assert await manager.run(user_id, work) == "ok"
        assert seen == ["at-1", "at-2"]
        oauth.refresh.assert_called_once_with("rt-1")
        stored = await credentials.load(user_id, JIRA)
        assert stored.access_token == "at-2"
        assert stored.refresh_token == "rt-2"
        assert stored.cloud_id == "cloud-1"

    @pytest.mark.asyncio
    async def test_second_401_is_terminal(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)
        oauth = _oauth()
        manager = TokenLifecycleManager(credentials, oauth)
        calls = []

        async def work(credential):
            calls.append(credential.access_token)
            raise AuthenticationException("denied", status=401)

        with pytest.raises(ReauthorizationRequiredError):
            await manager.run(user_id, work)
        assert len(calls) == 2
        assert oauth.refresh.call_count == 1

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_kept_when_not_returned(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)
        manager = TokenLifecycleManager(credentials, _oauth(refresh=None))

        refreshed = await manager.refresh(user_id, await credentials.load(user_id, JIRA))

        assert refreshed.access_token == "at-2"
        assert refreshed.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_missing_refresh_token_invalidates(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id, refresh=None)
        oauth = _oauth()
        manager = TokenLifecycleManager(credentials, oauth)

        async def work(credential):
            raise AuthenticationException("expired", status=401)

        with pytest.raises(RefreshTokenMissingError):
            await manager.run(user_id, work)
        oauth.refresh.assert_not_called()
        assert await credentials.load(user_id, JIRA) is None

    @pytest.mark.asyncio
    async def test_rejected_refresh_invalidates(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)
        oauth = MagicMock()
        oauth.refresh.side_effect = ConnectorException("invalid_grant", status=400)
        manager = TokenLifecycleManager(credentials, oauth)

        async def work(credential):
            raise AuthenticationException("expired", status=401)

        with pytest.raises(RefreshTokenRejectedError):
            await manager.run(user_id, work)
        assert await credentials.load(user_id, JIRA) is None

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_keeps_credential(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)
        oauth = MagicMock()
        oauth.refresh.side_effect = APIException("token endpoint down")
        manager = TokenLifecycleManager(credentials, oauth)

        async def work(credential):
            raise AuthenticationException("expired", status=401)

        with pytest.raises(APIException):
            await manager.run(user_id, work)
        assert (await credentials.load(user_id, JIRA)).access_token == "at-1"

    @pytest.mark.asyncio
    async def test_concurrent_401s_refresh_once(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)
        oauth = _oauth()
        manager = TokenLifecycleManager(credentials, oauth)
        started = asyncio.Event()
        waiting = 0

        async def work(credential):
            nonlocal waiting
            if credential.access_token == "at-1":
                waiting += 1
                if waiting == 3:
                    started.set()
                await started.wait()
                raise AuthenticationException("expired", status=401)
            return credential.access_token

        results = await asyncio.gather(*(manager.run(user_id, work) for _ in range(3)))

        assert results == ["at-2", "at-2", "at-2"]
        assert oauth.refresh.call_count == 1

    @pytest.mark.asyncio
    async def test_refresh_lock_is_released_after_use(self, credentials, team_setup):
        user_id = team_setup.leader_user.id
        await _connect_jira(credentials, user_id)
        manager = TokenLifecycleManager(credentials, _oauth())

        async def work(credential):
            if credential.access_token == "at-1":
                raise AuthenticationException("expired", status=401)
            return "ok"

        assert await manager.run(user_id, work) == "ok"
        gc.collect()
        assert user_id not in manager._locks
        assert len(manager._locks) == 0
