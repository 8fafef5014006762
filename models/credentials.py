"""
Plaintext credential records, one closed type per provider.

These only ever live in memory; the store holds the sealed form produced
by ``teamsync.credentials``.
"""

from dataclasses import dataclass
from typing import Optional, Union

GITHUB = "github"
JIRA = "jira"
PROVIDERS = (GITHUB, JIRA)


@dataclass(frozen=True)
class GithubCredential:
    access_token: str
    account_id: Optional[str] = None
    username: Optional[str] = None

    provider = GITHUB


@dataclass(frozen=True)
class JiraCredential:
    access_token: str
    refresh_token: Optional[str] = None
    account_id: Optional[str] = None
    cloud_id: Optional[str] = None
    site_url: Optional[str] = None
    email: Optional[str] = None

    provider = JIRA


Credential = Union[GithubCredential, JiraCredential]
