import uuid
from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, Float, ForeignKey,
                        Integer, Text, UniqueConstraint)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()

ROLE_LEADER = "Leader"
ROLE_MEMBER = "Member"

DEFAULT_SPRINT_NAME = "Default Sprint"
DEFAULT_SPRINT_EXTERNAL_ID = 0


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    SQLite drops offsets on write, so values are normalized to UTC going in
    and re-tagged as UTC coming out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(Text, primary_key=True, default=new_id)
    email = Column(Text, nullable=False, comment="account email, matched against commit authors")
    full_name = Column(Text)
    integrations = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="sealed credential records keyed by provider",
    )
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Team(Base):
    __tablename__ = "teams"
    id = Column(Text, primary_key=True, default=new_id)
    name = Column(Text, nullable=False)
    github_repo_url = Column(Text)
    jira_board_id = Column(Integer)
    jira_project_key = Column(Text)
    last_sync_at = Column(UTCDateTime)
    sync_history = Column(
        JSON, nullable=False, default=list, comment="most recent sync runs, newest first"
    )
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Project(Base):
    __tablename__ = "projects"
    id = Column(Text, primary_key=True, default=new_id)
    name = Column(Text, nullable=False)
    team_id = Column(Text, ForeignKey("teams.id", ondelete="CASCADE"), index=True)
    jira_project_key = Column(Text, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class TeamMember(Base):
    __tablename__ = "team_members"
    id = Column(Text, primary_key=True, default=new_id)
    team_id = Column(
        Text, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(Text, ForeignKey("projects.id", ondelete="SET NULL"))
    role = Column(Text, nullable=False, default=ROLE_MEMBER, comment="Leader or Member")
    jira_account_id = Column(Text, index=True)
    github_username = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Commit(Base):
    __tablename__ = "commits"
    hash = Column(Text, primary_key=True, comment="commit sha, globally unique")
    team_id = Column(
        Text, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True
    )
    author_email = Column(Text, index=True)
    author_name = Column(Text)
    message = Column(Text)
    commit_date = Column(UTCDateTime, nullable=False)
    url = Column(Text)
    branches = Column(JSON, nullable=False, default=list)
    is_counted = Column(Boolean, nullable=False, default=False)
    rejection_reason = Column(Text)
    synced_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Sprint(Base):
    __tablename__ = "sprints"
    __table_args__ = (
        UniqueConstraint("team_id", "jira_sprint_id", name="uq_sprints_team_external"),
    )
    id = Column(Text, primary_key=True, default=new_id)
    team_id = Column(
        Text, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True
    )
    jira_sprint_id = Column(Integer, nullable=False)
    name = Column(Text, nullable=False)
    state = Column(Text, comment="active, future or closed")
    start_date = Column(UTCDateTime)
    end_date = Column(UTCDateTime)


class Task(Base):
    __tablename__ = "tasks"
    issue_id = Column(Text, primary_key=True, comment="Jira issue id, globally unique")
    issue_key = Column(Text, nullable=False)
    team_id = Column(Text, ForeignKey("teams.id", ondelete="CASCADE"), index=True)
    sprint_id = Column(Text, ForeignKey("sprints.id", ondelete="SET NULL"), index=True)
    assignee_id = Column(Text, ForeignKey("team_members.id", ondelete="SET NULL"))
    assignee_account_id = Column(Text, index=True)
    assignee_name = Column(Text)
    summary = Column(Text)
    status_name = Column(Text)
    status_category = Column(Text)
    story_point = Column(Float, nullable=False, default=0.0)
    created_at = Column(UTCDateTime)
    updated_at = Column(UTCDateTime)
    synced_at = Column(UTCDateTime, nullable=False, default=utcnow)
