from .credentials import (GITHUB, JIRA, PROVIDERS, Credential,  # noqa: F401
                          GithubCredential, JiraCredential)
from .teams import (DEFAULT_SPRINT_EXTERNAL_ID, DEFAULT_SPRINT_NAME,  # noqa: F401
                    ROLE_LEADER, ROLE_MEMBER, Base, Commit, Project, Sprint,
                    Task, Team, TeamMember, User)

__all__ = [
    "Base",
    "Commit",
    "Credential",
    "DEFAULT_SPRINT_EXTERNAL_ID",
    "DEFAULT_SPRINT_NAME",
    "GITHUB",
    "GithubCredential",
    "JIRA",
    "JiraCredential",
    "PROVIDERS",
    "Project",
    "ROLE_LEADER",
    "ROLE_MEMBER",
    "Sprint",
    "Task",
    "Team",
    "TeamMember",
    "User",
]
