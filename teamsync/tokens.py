"""
OAuth token lifecycle for the issue tracker.

Every call that needs a Jira access token goes through
``TokenLifecycleManager.run``: the work is attempted with the stored token,
and on a 401/403 the token is refreshed (once, under a per-credential lock)
and the work retried exactly once.
"""

import asyncio
import logging
import weakref
from dataclasses import replace
from typing import Awaitable, Callable, Optional, TypeVar

from connectors.exceptions import (APIException, AuthenticationException,
                                   ConnectorException, RateLimitException)
from connectors.oauth import AtlassianOAuthClient
from models.credentials import JIRA, JiraCredential
from teamsync.credentials import CredentialService
from teamsync.exceptions import (ConfigurationError, NotConnectedError,
                                 ReauthorizationRequiredError,
                                 RefreshTokenMissingError,
                                 RefreshTokenRejectedError)

logger = logging.getLogger(__name__)

T = TypeVar("T")

REJECTED_REFRESH_STATUSES = (400, 401, 403)


class TokenLifecycleManager:
    """
    Detect-401, refresh, retry-once wrapper around issue-tracker calls.

    Refreshes are serialized per user. A caller that waited on the lock
    while another caller refreshed picks up the rotated token instead of
    spending the (already rotated) refresh token a second time.
    """

    def __init__(
        self,
        credentials: CredentialService,
        oauth_client: Optional[AtlassianOAuthClient] = None,
    ):
        self.credentials = credentials
        self.oauth_client = oauth_client
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    async def run(
        self, user_id: str, work: Callable[[JiraCredential], Awaitable[T]]
    ) -> T:
        """
        Run ``work`` with the user's Jira credential.

        :param user_id: Owner of the credential.
        :param work: Coroutine function receiving the current credential.
        :return: Whatever ``work`` returns.
        :raises NotConnectedError: If the user has no usable Jira credential.
        :raises RefreshTokenMissingError: If a refresh was needed but no refresh
            token is stored.
        :raises RefreshTokenRejectedError: If the provider rejected the refresh.
        :raises ReauthorizationRequiredError: If the work is still rejected
            after a successful refresh.
        """
        credential = await self.credentials.load(user_id, JIRA)
        if credential is None:
            raise NotConnectedError(JIRA)

        try:
            return await work(credential)
        except AuthenticationException as e:
            logger.info(f"Jira rejected the access token for user {user_id} ({e}); refreshing")

        credential = await self.refresh(user_id, credential)
        try:
            return await work(credential)
        except AuthenticationException as e:
            raise ReauthorizationRequiredError(
                JIRA, f"jira still rejects the refreshed token: {e}"
            ) from e

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        # Entries vanish once no refresh for the user holds or awaits the lock.
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def refresh(self, user_id: str, stale: JiraCredential) -> JiraCredential:
        """
        Exchange the refresh token and persist the rotated credential.

        Transient token-endpoint failures propagate without touching the
        stored credential; a rejected or missing refresh token invalidates it.
        """
        async with self._lock_for(user_id):
            current = await self.credentials.load(user_id, JIRA)
            if current is None:
                raise NotConnectedError(JIRA)
            if current.access_token != stale.access_token:
                logger.debug(f"Jira token for user {user_id} was refreshed concurrently")
                return current

            if not current.refresh_token:
                await self.credentials.invalidate(user_id, JIRA)
                raise RefreshTokenMissingError(JIRA)
            if self.oauth_client is None:
                raise ConfigurationError("Atlassian OAuth client is not configured")

            loop = asyncio.get_running_loop()
            try:
                token = await loop.run_in_executor(
                    None, self.oauth_client.refresh, current.refresh_token
                )
            except (APIException, RateLimitException):
                raise
            except ConnectorException as e:
                if e.status in REJECTED_REFRESH_STATUSES:
                    await self.credentials.invalidate(user_id, JIRA)
                    raise RefreshTokenRejectedError(JIRA, str(e)) from e
                raise

            rotated = replace(
                current,
                access_token=token.access_token,
                refresh_token=token.refresh_token or current.refresh_token,
            )
            await self.credentials.save(user_id, rotated)
            logger.info(f"Refreshed Jira token for user {user_id}")
            return rotated
