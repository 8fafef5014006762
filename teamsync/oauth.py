"""
Connecting and disconnecting GitHub and Jira accounts.

The code exchange and identity lookups run on the OAuth clients in the
default executor; the resulting credential is sealed onto the user.
An external account can be linked to at most one user.
"""

import asyncio
import functools
import logging
from typing import Callable, Optional

from connectors import GitHubConnector
from connectors.exceptions import ConnectorException
from connectors.oauth import AtlassianOAuthClient, GitHubOAuthClient
from models.credentials import (GITHUB, JIRA, PROVIDERS, GithubCredential,
                                JiraCredential)
from teamsync.credentials import CredentialService
from teamsync.exceptions import (ConfigurationError, NotFoundError,
                                 ValidationError)

logger = logging.getLogger(__name__)


class AccountLinker:
    """OAuth connect flows for both providers."""

    def __init__(
        self,
        store,
        credentials: CredentialService,
        github_oauth: Optional[GitHubOAuthClient] = None,
        atlassian_oauth: Optional[AtlassianOAuthClient] = None,
        github_factory: Optional[Callable[..., GitHubConnector]] = None,
    ):
        self.store = store
        self.credentials = credentials
        self.github_oauth = github_oauth
        self.atlassian_oauth = atlassian_oauth
        self.github_factory = github_factory or GitHubConnector

    async def _in_executor(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _ensure_unlinked(self, user_id: str, provider: str, account_id: str) -> None:
        owner = await self.store.find_user_by_integration(provider, account_id)
        if owner is not None and owner.id != user_id:
            raise ValidationError(
                f"This {provider} account is already linked to another user"
            )

    async def _require_user(self, user_id: str) -> None:
        if await self.store.get_user(user_id) is None:
            raise NotFoundError(f"Unknown user: {user_id}")

    def build_github_authorize_url(self, redirect_uri: str, state: str) -> str:
        if self.github_oauth is None:
            raise ConfigurationError("GitHub OAuth client is not configured")
        return self.github_oauth.authorize_url(redirect_uri, state)

    def build_atlassian_authorize_url(self, redirect_uri: str, state: str) -> str:
        if self.atlassian_oauth is None:
            raise ConfigurationError("Atlassian OAuth client is not configured")
        return self.atlassian_oauth.authorize_url(redirect_uri, state)

    async def connect_github(
        self, user_id: str, code: str, redirect_uri: Optional[str] = None
    ) -> GithubCredential:
        """
        Exchange a GitHub authorization code and link the account.

        :raises ValidationError: If the code is rejected or the account is
            linked to another user.
        """
        if self.github_oauth is None:
            raise ConfigurationError("GitHub OAuth client is not configured")
        await self._require_user(user_id)
        try:
            token = await self._in_executor(
                self.github_oauth.exchange_code, code, redirect_uri
            )
            connector = self.github_factory(token=token.access_token)
            try:
                account = await self._in_executor(connector.get_authenticated_user)
            finally:
                connector.close()
        except ConnectorException as e:
            raise ValidationError(f"GitHub authorization failed: {e}") from e

        await self._ensure_unlinked(user_id, GITHUB, account.account_id)
        credential = GithubCredential(
            access_token=token.access_token,
            account_id=account.account_id,
            username=account.username,
        )
        await self.credentials.save(user_id, credential)
        logger.info(f"User {user_id} connected GitHub account {account.username}")
        return credential

    async def connect_jira(
        self, user_id: str, code: str, redirect_uri: str
    ) -> JiraCredential:
        """
        Exchange an Atlassian authorization code and link the account.

        The first accessible site becomes the credential's cloud id.

        :raises ValidationError: If the code is rejected, no Jira site is
            accessible, or the account is linked to another user.
        """
        if self.atlassian_oauth is None:
            raise ConfigurationError("Atlassian OAuth client is not configured")
        await self._require_user(user_id)
        try:
            token = await self._in_executor(
                self.atlassian_oauth.exchange_code, code, redirect_uri
            )
            sites = await self._in_executor(
                self.atlassian_oauth.accessible_resources, token.access_token
            )
            account = await self._in_executor(
                self.atlassian_oauth.me, token.access_token
            )
        except ConnectorException as e:
            raise ValidationError(f"Atlassian authorization failed: {e}") from e
        if not sites:
            raise ValidationError("No Jira site is accessible with this account")

        await self._ensure_unlinked(user_id, JIRA, account.account_id)
        site = sites[0]
        credential = JiraCredential(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            account_id=account.account_id,
            cloud_id=site.cloud_id,
            site_url=site.url,
            email=account.email,
        )
        await self.credentials.save(user_id, credential)
        logger.info(f"User {user_id} connected Jira site {site.url or site.cloud_id}")
        return credential

    async def disconnect(self, user_id: str, provider: str) -> None:
        if provider not in PROVIDERS:
            raise ValidationError(f"Unknown provider: {provider}")
        await self.credentials.invalidate(user_id, provider)
