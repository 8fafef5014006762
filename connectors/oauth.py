"""
OAuth 2.0 clients for GitHub and Atlassian.

Covers the authorization URL, the code exchange, the Atlassian refresh
grant and the identity lookups needed to link an external account.
"""

import logging
from typing import List, Optional
from urllib.parse import urlencode

from connectors.exceptions import ConnectorException
from connectors.models import AtlassianSite, ExternalAccount, OAuthToken
from connectors.utils.rest import RESTClient

logger = logging.getLogger(__name__)

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_DEFAULT_SCOPE = "read:user user:email repo"

ATLASSIAN_AUTHORIZE_URL = "https://auth.atlassian.com/authorize"
ATLASSIAN_TOKEN_URL = "https://auth.atlassian.com/oauth/token"
ATLASSIAN_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
ATLASSIAN_ME_URL = "https://api.atlassian.com/me"
ATLASSIAN_DEFAULT_SCOPE = " ".join(
    [
        "read:jira-work",
        "read:jira-user",
        "read:me",
        "read:board-scope:jira-software",
        "read:sprint:jira-software",
        "read:project:jira",
        "offline_access",
    ]
)

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


def _token_from_response(data: dict, provider: str) -> OAuthToken:
    if not isinstance(data, dict):
        data = {}
    if not data.get("access_token"):
        error = data.get("error_description") or data.get("error") or "no access token"
        raise ConnectorException(f"{provider} token request failed: {error}", status=400)
    return OAuthToken(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
        scope=data.get("scope"),
    )


class GitHubOAuthClient:
    """GitHub OAuth app flow."""

    def __init__(self, client_id: str, client_secret: str, timeout: int = 15):
        self.client_id = client_id
        self.client_secret = client_secret
        self.rest = RESTClient("https://github.com", timeout=timeout)

    def authorize_url(
        self, redirect_uri: str, state: str, scope: str = GITHUB_DEFAULT_SCOPE
    ) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
        }
        return f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> OAuthToken:
        """
        Exchange an authorization code for an access token.

        GitHub reports a bad code with HTTP 200 and an ``error`` field, which
        is surfaced as a ConnectorException.
        """
        body = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }
        if redirect_uri:
            body["redirect_uri"] = redirect_uri
        data = self.rest.post(GITHUB_TOKEN_URL, data=body, headers=FORM_HEADERS)
        return _token_from_response(data, "GitHub")


class AtlassianOAuthClient:
    """Atlassian OAuth 2.0 (3LO) flow."""

    def __init__(self, client_id: str, client_secret: str, timeout: int = 15):
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.rest = RESTClient("https://auth.atlassian.com", timeout=timeout)

    def authorize_url(
        self, redirect_uri: str, state: str, scope: str = ATLASSIAN_DEFAULT_SCOPE
    ) -> str:
        params = {
            "audience": "api.atlassian.com",
            "client_id": self.client_id,
            "scope": scope,
            "redirect_uri": redirect_uri,
            "state": state,
            "response_type": "code",
            "prompt": "consent",
        }
        return f"{ATLASSIAN_AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str) -> OAuthToken:
        """Exchange an authorization code for access and refresh tokens."""
        data = self.rest.post(
            ATLASSIAN_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
            headers=FORM_HEADERS,
        )
        token = _token_from_response(data, "Atlassian")
        if not token.refresh_token:
            logger.warning(
                "Atlassian returned no refresh token; check the offline_access scope"
            )
        return token

    def refresh(self, refresh_token: str) -> OAuthToken:
        """
        Run the refresh grant.

        Atlassian rotates refresh tokens; when the response carries none the
        caller keeps the previous one.

        :raises ConnectorException: With ``status`` 400/401/403 when the
            refresh token is rejected, or an APIException on transient failure.
        """
        data = self.rest.post(
            ATLASSIAN_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            },
            headers=FORM_HEADERS,
        )
        return _token_from_response(data, "Atlassian")

    def accessible_resources(self, access_token: str) -> List[AtlassianSite]:
        client = RESTClient(
            ATLASSIAN_RESOURCES_URL, token=access_token, timeout=self.timeout
        )
        sites = []
        for item in client.get_list(ATLASSIAN_RESOURCES_URL):
            if item.get("id"):
                sites.append(
                    AtlassianSite(
                        cloud_id=item["id"], url=item.get("url"), name=item.get("name")
                    )
                )
        return sites

    def me(self, access_token: str) -> ExternalAccount:
        client = RESTClient(ATLASSIAN_ME_URL, token=access_token, timeout=self.timeout)
        data = client.get(ATLASSIAN_ME_URL)
        if not data.get("account_id"):
            raise ConnectorException("Atlassian /me returned no account id")
        return ExternalAccount(
            account_id=data["account_id"],
            email=data.get("email"),
            display_name=data.get("name"),
        )
