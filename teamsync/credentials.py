"""
Credential records: sealed at rest on the user, plaintext in memory.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from models.credentials import (GITHUB, JIRA, PROVIDERS, Credential,
                                GithubCredential, JiraCredential)
from teamsync.exceptions import (NotFoundError, ValidationError,
                                 VaultIntegrityError)
from teamsync.vault import CredentialVault

logger = logging.getLogger(__name__)


class CredentialService:
    """Reads and writes per-provider credential records through the vault."""

    def __init__(self, store, vault: CredentialVault):
        self.store = store
        self.vault = vault

    def _open_optional(self, sealed: Optional[str], what: str) -> Optional[str]:
        if not sealed:
            return None
        try:
            return self.vault.open(sealed)
        except VaultIntegrityError as e:
            logger.warning(f"Could not open stored {what}: {e}")
            return None

    def unseal(
        self, provider: str, record: Optional[Dict[str, Any]]
    ) -> Optional[Credential]:
        """
        Turn a stored record into a credential.

        :return: The credential, or None when the record is absent or its
            access token cannot be opened (reconnect required).
        """
        if not record or not record.get("access_token"):
            return None
        access_token = self._open_optional(
            record["access_token"], f"{provider} access token"
        )
        if access_token is None:
            logger.warning(f"{provider} credential is unreadable; reconnect required")
            return None

        if provider == GITHUB:
            return GithubCredential(
                access_token=access_token,
                account_id=record.get("account_id"),
                username=record.get("username"),
            )
        if provider == JIRA:
            return JiraCredential(
                access_token=access_token,
                refresh_token=self._open_optional(
                    record.get("refresh_token"), "jira refresh token"
                ),
                account_id=record.get("account_id"),
                cloud_id=record.get("cloud_id"),
                site_url=record.get("site_url"),
                email=record.get("email"),
            )
        raise ValidationError(f"Unknown provider: {provider}")

    def seal(self, credential: Credential) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "access_token": self.vault.seal(credential.access_token),
            "account_id": credential.account_id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if isinstance(credential, GithubCredential):
            record["username"] = credential.username
        else:
            record.update(
                {
                    "refresh_token": self.vault.seal(credential.refresh_token)
                    if credential.refresh_token
                    else None,
                    "cloud_id": credential.cloud_id,
                    "site_url": credential.site_url,
                    "email": credential.email,
                }
            )
        return record

    async def load(self, user_id: str, provider: str) -> Optional[Credential]:
        if provider not in PROVIDERS:
            raise ValidationError(f"Unknown provider: {provider}")
        user = await self.store.get_user(user_id)
        if user is None:
            return None
        return self.unseal(provider, (user.integrations or {}).get(provider))

    async def save(self, user_id: str, credential: Credential) -> None:
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"Unknown user: {user_id}")
        integrations = dict(user.integrations or {})
        integrations[credential.provider] = self.seal(credential)
        await self.store.update_user_integrations(user_id, integrations)
        logger.info(f"Stored {credential.provider} credential for user {user_id}")

    async def invalidate(self, user_id: str, provider: str) -> None:
        """Drop a credential so the user is asked to reconnect."""
        user = await self.store.get_user(user_id)
        if user is None:
            return
        integrations = dict(user.integrations or {})
        if integrations.pop(provider, None) is not None:
            await self.store.update_user_integrations(user_id, integrations)
            logger.warning(f"Invalidated {provider} credential for user {user_id}")
