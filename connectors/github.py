"""
GitHub connector using PyGithub.

Retrieves recent commits for a team repository, optionally across every
branch, and identifies the account behind an OAuth token.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from github import Github, GithubException, RateLimitExceededException

from connectors.exceptions import (APIException, AuthenticationException,
                                   NotFoundException, RateLimitException)
from connectors.models import ExternalAccount, RemoteCommit
from connectors.normalize import github_commit_to_remote
from connectors.utils import retry_with_backoff

logger = logging.getLogger(__name__)

_REPO_URL = re.compile(
    r"^(?:https?://|git@)?(?:www\.)?github\.com[/:]"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?/?$"
)


def parse_repo_url(url: str) -> Optional[Tuple[str, str]]:
    """
    Extract ``(owner, repo)`` from a GitHub repository URL.

    :param url: e.g. ``https://github.com/org/repo.git`` or ``git@github.com:org/repo``.
    :return: Owner and repository name, or None if the URL is not a GitHub repo URL.

    Examples:
        - 'https://github.com/acme/app' -> ('acme', 'app')
        - 'https://github.com/acme/app.git/' -> ('acme', 'app')
    """
    if not url:
        return None
    match = _REPO_URL.match(url.strip())
    if not match:
        return None
    return match.group("owner"), match.group("repo")


class GitHubConnector:
    """
    GitHub connector backed by PyGithub.

    All methods are blocking; async callers run them in an executor.
    """

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        per_page: int = 100,
        timeout: int = 30,
    ):
        """
        Initialize GitHub connector.

        :param token: OAuth access token.
        :param base_url: Optional base URL for GitHub Enterprise.
        :param per_page: Number of items per page for pagination.
        :param timeout: Request timeout in seconds.
        """
        self.token = token
        self.per_page = per_page

        if base_url:
            self.github = Github(
                base_url=base_url,
                login_or_token=token,
                per_page=per_page,
                timeout=timeout,
            )
        else:
            self.github = Github(login_or_token=token, per_page=per_page, timeout=timeout)

    def _handle_github_exception(self, e: Exception) -> None:
        """
        Handle GitHub API exceptions and convert to connector exceptions.

        :param e: Exception from GitHub API.
        :raises: Appropriate connector exception.
        """
        if isinstance(e, RateLimitExceededException):
            raise RateLimitException(f"GitHub rate limit exceeded: {e}", status=429)
        elif isinstance(e, GithubException):
            if e.status in (401, 403):
                raise AuthenticationException(
                    f"GitHub authentication failed: {e}", status=e.status
                )
            elif e.status == 404:
                raise NotFoundException(f"GitHub resource not found: {e}", status=404)
            else:
                raise APIException(f"GitHub API error: {e}", status=e.status)
        else:
            raise APIException(f"Unexpected error: {e}")

    @retry_with_backoff(
        max_retries=3,
        initial_delay=1.0,
        exceptions=(RateLimitException, APIException),
    )
    def list_commits(
        self,
        owner: str,
        repo: str,
        max_commits: int = 100,
        all_branches: bool = False,
    ) -> List[RemoteCommit]:
        """
        Fetch the most recent commits of a repository.

        With ``all_branches`` every branch is walked (up to ``max_commits``
        each) and commits seen on several branches are reported once, carrying
        all branch names.

        :param owner: Repository owner.
        :param repo: Repository name.
        :param max_commits: Maximum commits per branch (or for the default branch).
        :param all_branches: Walk every branch instead of the default one.
        :return: List of RemoteCommit objects, newest first.
        """
        try:
            gh_repo = self.github.get_repo(f"{owner}/{repo}")
            if all_branches:
                branch_names = [branch.name for branch in gh_repo.get_branches()]
            else:
                branch_names = [gh_repo.default_branch]

            by_hash: Dict[str, RemoteCommit] = {}
            for branch in branch_names:
                count = 0
                for gh_commit in gh_repo.get_commits(sha=branch):
                    if count >= max_commits:
                        break
                    count += 1
                    existing = by_hash.get(gh_commit.sha)
                    if existing is not None:
                        if branch not in existing.branches:
                            existing.branches.append(branch)
                        continue
                    try:
                        by_hash[gh_commit.sha] = github_commit_to_remote(
                            gh_commit, branches=[branch]
                        )
                    except ValueError as e:
                        logger.warning(f"Skipping commit on {owner}/{repo}: {e}")

            commits = sorted(by_hash.values(), key=lambda c: c.commit_date, reverse=True)
            logger.info(
                f"Fetched {len(commits)} commits from {owner}/{repo} "
                f"across {len(branch_names)} branch(es)"
            )
            return commits

        except Exception as e:
            self._handle_github_exception(e)

    @retry_with_backoff(
        max_retries=3,
        initial_delay=1.0,
        exceptions=(RateLimitException, APIException),
    )
    def get_authenticated_user(self) -> ExternalAccount:
        """
        Identify the account owning the token.

        :return: ExternalAccount with the numeric user id as ``account_id``.
        """
        try:
            user = self.github.get_user()
            return ExternalAccount(
                account_id=str(user.id),
                username=user.login,
                email=user.email,
                display_name=user.name,
            )
        except Exception as e:
            self._handle_github_exception(e)

    def close(self) -> None:
        """Close the underlying HTTP session."""
        close = getattr(self.github, "close", None)
        if callable(close):
            close()
