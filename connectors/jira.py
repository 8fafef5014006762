"""
Jira Cloud connector (OAuth 2.0 / 3LO).

Talks to the Agile REST API for boards, sprints and sprint issues and to
the platform REST API for project metadata and JQL search, both through
the Atlassian API gateway for a given cloud id.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

from connectors.models import ProjectLead, RemoteIssue, RemoteSprint
from connectors.normalize import (DEFAULT_STORY_POINT_FIELD,
                                  jira_issue_payload_to_remote,
                                  jira_sprint_payload_to_remote)
from connectors.utils.rest import RESTClient

logger = logging.getLogger(__name__)

ATLASSIAN_API_BASE = "https://api.atlassian.com/ex/jira"
SPRINT_STATES = "active,future,closed"
SPRINT_PAGE_SIZE = 50
ISSUE_PAGE_SIZE = 100
SEARCH_PAGE_SIZE = 50
BOARD_PAGE_SIZE = 50


class JiraConnector:
    """
    Jira Cloud connector bound to one access token and one site.
    """

    def __init__(
        self,
        access_token: str,
        cloud_id: str,
        story_point_field: str = DEFAULT_STORY_POINT_FIELD,
        timeout: int = 30,
        api_base: str = ATLASSIAN_API_BASE,
    ):
        """
        Initialize Jira connector.

        :param access_token: OAuth access token.
        :param cloud_id: Atlassian cloud (site) id.
        :param story_point_field: Custom field holding story point estimates.
        :param timeout: Request timeout in seconds.
        :param api_base: Gateway base URL.
        """
        if not cloud_id:
            raise ValueError("Jira cloud id is required")
        self.cloud_id = cloud_id
        self.story_point_field = story_point_field
        site_base = f"{api_base.rstrip('/')}/{cloud_id}"
        self.agile = RESTClient(
            f"{site_base}/rest/agile/1.0", token=access_token, timeout=timeout
        )
        self.platform = RESTClient(
            f"{site_base}/rest/api/3", token=access_token, timeout=timeout
        )

    @staticmethod
    def _paginate(
        client: RESTClient,
        endpoint: str,
        items_key: str,
        params: Dict[str, Any],
        page_size: int,
    ) -> Iterator[Dict[str, Any]]:
        start_at = 0
        while True:
            page = client.get(
                endpoint, params={**params, "startAt": start_at, "maxResults": page_size}
            )
            items = page.get(items_key) or []
            for item in items:
                yield item

            start_at += len(items)
            if not items or page.get("isLast") is True:
                break
            total = page.get("total")
            if total is not None and start_at >= total:
                break
            if page.get("isLast") is None and total is None and len(items) < page_size:
                break

    def list_sprints(self, board_id: int) -> List[RemoteSprint]:
        """
        List all sprints of a board (active, future and closed).

        :param board_id: Jira board id.
        :return: List of RemoteSprint objects.
        """
        sprints = []
        for raw in self._paginate(
            self.agile,
            f"board/{board_id}/sprint",
            "values",
            {"state": SPRINT_STATES},
            SPRINT_PAGE_SIZE,
        ):
            try:
                sprints.append(jira_sprint_payload_to_remote(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed sprint on board {board_id}: {e}")
        logger.info(f"Fetched {len(sprints)} sprints from board {board_id}")
        return sprints

    def list_sprint_issues(self, sprint_id: int) -> List[RemoteIssue]:
        """
        List all issues in a sprint.

        :param sprint_id: Jira sprint id.
        :return: List of RemoteIssue objects.
        """
        fields = ",".join(
            [
                "summary",
                "status",
                "assignee",
                "project",
                self.story_point_field,
                "created",
                "updated",
            ]
        )
        issues = []
        for raw in self._paginate(
            self.agile,
            f"sprint/{sprint_id}/issue",
            "issues",
            {"fields": fields},
            ISSUE_PAGE_SIZE,
        ):
            try:
                issue = jira_issue_payload_to_remote(raw, self.story_point_field)
            except ValueError as e:
                logger.warning(f"Skipping malformed issue in sprint {sprint_id}: {e}")
                continue
            issue.sprint_id = sprint_id
            issues.append(issue)
        logger.debug(f"Fetched {len(issues)} issues from sprint {sprint_id}")
        return issues

    def find_board_id(self, project_key: str) -> Optional[int]:
        """
        Find the first board of a project.

        :param project_key: Project key, e.g. ``SWP``.
        :return: Board id, or None when the project has no board.
        """
        data = self.agile.get(
            "board", params={"projectKeyOrId": project_key, "maxResults": BOARD_PAGE_SIZE}
        )
        for board in data.get("values") or []:
            if board.get("id") is not None:
                logger.info(f"Using board {board['id']} for project {project_key}")
                return int(board["id"])
        logger.info(f"Project {project_key} has no board")
        return None

    def search_project_issues(self, project_key: str) -> List[RemoteIssue]:
        """
        List every issue of a project, backlog included.

        Uses the JQL search with ``nextPageToken`` paging. All fields are
        requested because the sprint field id differs between sites.

        :param project_key: Project key, e.g. ``SWP``.
        :return: List of RemoteIssue objects; ``sprint_id`` is None for backlog issues.
        """
        jql = f'project = "{project_key}"'
        issues = []
        next_page_token = None
        while True:
            body: Dict[str, Any] = {
                "jql": jql,
                "maxResults": SEARCH_PAGE_SIZE,
                "fields": ["*all"],
            }
            if next_page_token:
                body["nextPageToken"] = next_page_token
            page = self.platform.post("search/jql", json=body)
            for raw in page.get("issues") or []:
                try:
                    issues.append(jira_issue_payload_to_remote(raw, self.story_point_field))
                except ValueError as e:
                    logger.warning(f"Skipping malformed issue in project {project_key}: {e}")
            next_page_token = page.get("nextPageToken")
            if not next_page_token or page.get("isLast") is True:
                break
        logger.info(f"Fetched {len(issues)} issues for project {project_key}")
        return issues

    def get_project_lead(self, project_key: str) -> ProjectLead:
        """
        Fetch the lead of a Jira project.

        :param project_key: Project key, e.g. ``SWP``.
        :return: ProjectLead (``account_id`` is None when the project has no lead).
        """
        data = self.platform.get(f"project/{project_key}")
        lead: Optional[Dict[str, Any]] = data.get("lead") if isinstance(data, dict) else None
        if not lead:
            return ProjectLead(account_id=None)
        return ProjectLead(
            account_id=lead.get("accountId"), display_name=lead.get("displayName")
        )

