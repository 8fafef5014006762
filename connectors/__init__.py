"""
GitHub and Jira connectors for retrieving team activity.

This package provides connectors for GitHub (PyGithub) and Jira Cloud
(REST over OAuth 2.0) with retry, rate limit and error mapping.
"""

from .exceptions import (APIException, AuthenticationException,
                         ConnectorException, NotFoundException,
                         RateLimitException)
from .github import GitHubConnector, parse_repo_url
from .jira import JiraConnector
from .models import (AtlassianSite, ExternalAccount, OAuthToken, ProjectLead,
                     RemoteCommit, RemoteIssue, RemoteSprint)
from .oauth import AtlassianOAuthClient, GitHubOAuthClient

__all__ = [
    # Connectors
    "GitHubConnector",
    "JiraConnector",
    "AtlassianOAuthClient",
    "GitHubOAuthClient",
    "parse_repo_url",
    # Models
    "RemoteCommit",
    "RemoteSprint",
    "RemoteIssue",
    "ProjectLead",
    "OAuthToken",
    "AtlassianSite",
    "ExternalAccount",
    # Exceptions
    "ConnectorException",
    "RateLimitException",
    "AuthenticationException",
    "NotFoundException",
    "APIException",
]
