import asyncio
import contextlib
import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConfigurationError
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import sessionmaker

from models.teams import (DEFAULT_SPRINT_EXTERNAL_ID, ROLE_LEADER, ROLE_MEMBER,
                          Base, Commit, Project, Sprint, Task, Team,
                          TeamMember, User)


def detect_db_type(conn_string: str) -> str:
    """
    Detect database type from connection string.

    :param conn_string: Database connection string.
    :return: Database type ('postgres', 'sqlite' or 'mongo').
    :raises ValueError: If database type cannot be determined.
    """
    if not conn_string:
        raise ValueError("Connection string is required")

    conn_lower = conn_string.lower()

    # MongoDB connection strings
    if conn_lower.startswith("mongodb://") or conn_lower.startswith("mongodb+srv://"):
        return "mongo"

    # PostgreSQL connection strings
    if conn_lower.startswith("postgresql://") or conn_lower.startswith("postgres://"):
        return "postgres"
    if conn_lower.startswith("postgresql+asyncpg://"):
        return "postgres"

    # SQLite connection strings
    if conn_lower.startswith("sqlite://") or conn_lower.startswith(
        "sqlite+aiosqlite://"
    ):
        return "sqlite"

    # Extract scheme for better error reporting
    scheme = conn_string.split("://", 1)[0] if "://" in conn_string else "unknown"
    raise ValueError(
        f"Could not detect database type from connection string. "
        f"Supported: mongodb://, postgresql://, postgres://, sqlite://, "
        f"or variations with async drivers. Got scheme: '{scheme}'"
    )


def _async_url(conn_string: str) -> str:
    lower = conn_string.lower()
    if lower.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + conn_string[len("sqlite://") :]
    if lower.startswith("postgres://"):
        return "postgresql+asyncpg://" + conn_string[len("postgres://") :]
    if lower.startswith("postgresql://"):
        return "postgresql+asyncpg://" + conn_string[len("postgresql://") :]
    return conn_string


def create_store(
    conn_string: str,
    db_type: Optional[str] = None,
    db_name: Optional[str] = None,
    echo: bool = False,
) -> Union["SQLAlchemyStore", "MongoStore"]:
    """
    Create a storage backend based on the connection string.

    :param conn_string: Database connection string.
    :param db_type: Optional explicit database type ('postgres', 'sqlite', 'mongo').
                   If not provided, it will be auto-detected from conn_string.
    :param db_name: Optional database name (for MongoDB).
    :param echo: Whether to echo SQL statements (for SQLAlchemy).
    :return: Appropriate store instance (SQLAlchemyStore or MongoStore).
    """
    if db_type is None:
        db_type = detect_db_type(conn_string)

    db_type = db_type.lower()

    if db_type == "mongo":
        return MongoStore(conn_string, db_name=db_name)
    elif db_type in ("postgres", "postgresql", "sqlite"):
        return SQLAlchemyStore(_async_url(conn_string), echo=echo)
    else:
        raise ValueError(
            f"Unsupported database type: {db_type}. "
            f"Supported types: postgres, sqlite, mongo"
        )


def _serialize_value(value: Any) -> Any:
    """Convert values so they are safe to store in MongoDB."""
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def model_to_dict(model: Any) -> Dict[str, Any]:
    """Convert a SQLAlchemy model instance to a plain dict."""
    mapper = inspect(model.__class__)
    data: Dict[str, Any] = {}
    for column in mapper.columns:
        data[column.key] = _serialize_value(getattr(model, column.key))
    return data


def _with_defaults(model: Any) -> Dict[str, Any]:
    """
    Row for an upsert: column values with Python-side defaults applied.

    Transient instances only receive column defaults at flush time, which
    bulk upserts never go through.
    """
    row = model_to_dict(model)
    for column in inspect(model.__class__).columns:
        if row.get(column.key) is None and column.default is not None:
            default = column.default.arg
            row[column.key] = default(None) if callable(default) else default
    return row


class SQLAlchemyStore:
    """Async storage implementation backed by SQLAlchemy."""

    def __init__(self, conn_string: str, echo: bool = False) -> None:
        engine_kwargs: Dict[str, Any] = {"echo": echo}

        # Only add pooling parameters for databases that support them
        if "sqlite" not in conn_string.lower():
            engine_kwargs.update(
                {
                    "pool_size": 10,
                    "max_overflow": 20,
                    "pool_pre_ping": True,  # Verify connections before using
                    "pool_recycle": 3600,  # Recycle connections after 1 hour
                }
            )

        self.engine = create_async_engine(conn_string, **engine_kwargs)
        self.session_factory = sessionmaker(
            self.engine, expire_on_commit=False, class_=AsyncSession
        )
        # SQLite allows a single writer; serialize access instead of failing
        # with "database is locked" when legs and sprints run concurrently.
        self._lock = asyncio.Lock() if self.engine.dialect.name == "sqlite" else None

    @contextlib.asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self._lock is None:
            async with self.session_factory() as session:
                yield session
            return
        async with self._lock:
            async with self.session_factory() as session:
                yield session

    def _insert_for_dialect(self, model: Any):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            return sqlite_insert(model)
        if dialect in ("postgres", "postgresql"):
            return pg_insert(model)
        raise ValueError(f"Unsupported SQL dialect for upserts: {dialect}")

    async def _upsert(
        self,
        model: Any,
        row: Dict[str, Any],
        conflict_columns: List[str],
        update_columns: List[str],
    ) -> None:
        stmt = self._insert_for_dialect(model).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[getattr(model, col) for col in conflict_columns],
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def _add(self, instance: Any) -> Any:
        async with self._session() as session:
            session.add(instance)
            await session.commit()
        return instance

    async def _first(self, stmt) -> Any:
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def _all(self, stmt) -> List[Any]:
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def __aenter__(self) -> "SQLAlchemyStore":
        # Create tables for SQLite automatically
        if self.engine.dialect.name == "sqlite":
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.engine.dispose()

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # Users

    async def insert_user(self, user: User) -> User:
        return await self._add(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session() as session:
            return await session.get(User, user_id)

    async def get_users(self, user_ids: Sequence[str]) -> List[User]:
        if not user_ids:
            return []
        return await self._all(select(User).where(User.id.in_(list(user_ids))))

    async def find_user_by_integration(
        self, provider: str, account_id: str
    ) -> Optional[User]:
        return await self._first(
            select(User).where(
                User.integrations[provider]["account_id"].as_string() == account_id
            )
        )

    async def update_user_integrations(
        self, user_id: str, integrations: Dict[str, Any]
    ) -> None:
        async with self._session() as session:
            await session.execute(
                update(User).where(User.id == user_id).values(integrations=integrations)
            )
            await session.commit()

    # Teams and projects

    async def insert_team(self, team: Team) -> Team:
        return await self._add(team)

    async def get_team(self, team_id: str) -> Optional[Team]:
        async with self._session() as session:
            return await session.get(Team, team_id)

    async def list_teams(self) -> List[Team]:
        return await self._all(select(Team).order_by(Team.created_at, Team.id))

    async def record_sync(
        self,
        team_id: str,
        synced_at: datetime,
        entry: Dict[str, Any],
        limit: int,
    ) -> None:
        async with self._session() as session:
            team = await session.get(Team, team_id)
            if team is None:
                return
            team.last_sync_at = synced_at
            team.sync_history = ([entry] + list(team.sync_history or []))[:limit]
            await session.commit()

    async def insert_project(self, project: Project) -> Project:
        return await self._add(project)

    async def get_project(self, project_id: str) -> Optional[Project]:
        async with self._session() as session:
            return await session.get(Project, project_id)

    async def find_project_by_jira_key(self, project_key: str) -> Optional[Project]:
        return await self._first(
            select(Project)
            .where(Project.jira_project_key == project_key)
            .order_by(Project.created_at)
        )

    # Members

    async def insert_member(self, member: TeamMember) -> TeamMember:
        return await self._add(member)

    async def get_member(self, member_id: str) -> Optional[TeamMember]:
        async with self._session() as session:
            return await session.get(TeamMember, member_id)

    async def list_members(
        self, team_id: str, active_only: bool = True
    ) -> List[TeamMember]:
        stmt = select(TeamMember).where(TeamMember.team_id == team_id)
        if active_only:
            stmt = stmt.where(TeamMember.is_active.is_(True))
        return await self._all(stmt.order_by(TeamMember.joined_at, TeamMember.id))

    async def find_member_by_jira_account(
        self, team_id: str, account_id: str
    ) -> Optional[TeamMember]:
        return await self._first(
            select(TeamMember)
            .where(
                TeamMember.team_id == team_id,
                TeamMember.jira_account_id == account_id,
                TeamMember.is_active.is_(True),
            )
            .order_by(TeamMember.joined_at, TeamMember.id)
        )

    async def find_active_member_by_project(
        self, project_id: str
    ) -> Optional[TeamMember]:
        return await self._first(
            select(TeamMember)
            .where(
                TeamMember.project_id == project_id,
                TeamMember.is_active.is_(True),
            )
            .order_by(TeamMember.joined_at, TeamMember.id)
        )

    async def update_member(self, member_id: str, **values: Any) -> None:
        async with self._session() as session:
            await session.execute(
                update(TeamMember).where(TeamMember.id == member_id).values(**values)
            )
            await session.commit()

    async def set_team_leader(self, team_id: str, member_id: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(TeamMember)
                .where(TeamMember.team_id == team_id)
                .values(role=ROLE_MEMBER)
            )
            await session.execute(
                update(TeamMember)
                .where(TeamMember.id == member_id)
                .values(role=ROLE_LEADER)
            )
            await session.commit()

    # Commits

    async def get_commit(self, commit_hash: str) -> Optional[Commit]:
        async with self._session() as session:
            return await session.get(Commit, commit_hash)

    async def get_last_counted_commit(
        self, team_id: str, author_email: Optional[str], not_after: datetime
    ) -> Optional[Commit]:
        return await self._first(
            select(Commit)
            .where(
                Commit.team_id == team_id,
                Commit.author_email == author_email,
                Commit.is_counted.is_(True),
                Commit.commit_date <= not_after,
            )
            .order_by(Commit.commit_date.desc())
        )

    async def upsert_commit(self, commit: Commit) -> None:
        row = _with_defaults(commit)
        await self._upsert(
            Commit,
            row,
            conflict_columns=["hash"],
            update_columns=[col for col in row if col != "hash"],
        )

    async def touch_commit(
        self, commit_hash: str, branches: List[str], synced_at: datetime
    ) -> None:
        async with self._session() as session:
            await session.execute(
                update(Commit)
                .where(Commit.hash == commit_hash)
                .values(branches=branches, synced_at=synced_at)
            )
            await session.commit()

    async def list_commits(
        self, team_id: str, counted_only: bool = False
    ) -> List[Commit]:
        stmt = select(Commit).where(Commit.team_id == team_id)
        if counted_only:
            stmt = stmt.where(Commit.is_counted.is_(True))
        return await self._all(stmt.order_by(Commit.commit_date.desc()))

    # Sprints

    async def upsert_sprint(self, sprint: Sprint) -> Sprint:
        row = _with_defaults(sprint)
        await self._upsert(
            Sprint,
            row,
            conflict_columns=["team_id", "jira_sprint_id"],
            update_columns=["name", "state", "start_date", "end_date"],
        )
        return await self.get_sprint_by_external(sprint.team_id, sprint.jira_sprint_id)

    async def get_or_create_sprint(self, sprint: Sprint) -> Sprint:
        row = _with_defaults(sprint)
        stmt = self._insert_for_dialect(Sprint).values(**row).on_conflict_do_nothing(
            index_elements=[Sprint.team_id, Sprint.jira_sprint_id]
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()
        return await self.get_sprint_by_external(sprint.team_id, sprint.jira_sprint_id)

    async def get_sprint(self, sprint_id: str) -> Optional[Sprint]:
        async with self._session() as session:
            return await session.get(Sprint, sprint_id)

    async def get_sprint_by_external(
        self, team_id: str, jira_sprint_id: int
    ) -> Optional[Sprint]:
        return await self._first(
            select(Sprint).where(
                Sprint.team_id == team_id, Sprint.jira_sprint_id == jira_sprint_id
            )
        )

    async def list_sprints(self, team_id: str) -> List[Sprint]:
        return await self._all(
            select(Sprint)
            .where(Sprint.team_id == team_id)
            .order_by(Sprint.start_date, Sprint.jira_sprint_id)
        )

    async def delete_sprints_not_in(
        self, team_id: str, jira_sprint_ids: Sequence[int]
    ) -> List[str]:
        """Delete sprints missing from ``jira_sprint_ids``, except the default one."""
        keep = set(jira_sprint_ids) | {DEFAULT_SPRINT_EXTERNAL_ID}
        async with self._session() as session:
            stale = (
                await session.execute(
                    select(Sprint.id).where(
                        Sprint.team_id == team_id, Sprint.jira_sprint_id.not_in(keep)
                    )
                )
            ).scalars().all()
            if stale:
                await session.execute(delete(Sprint).where(Sprint.id.in_(stale)))
                await session.commit()
            return list(stale)

    # Tasks

    async def get_task(self, issue_id: str) -> Optional[Task]:
        async with self._session() as session:
            return await session.get(Task, issue_id)

    async def upsert_task(self, task: Task) -> None:
        row = _with_defaults(task)
        await self._upsert(
            Task,
            row,
            conflict_columns=["issue_id"],
            update_columns=[col for col in row if col != "issue_id"],
        )

    async def delete_task(self, issue_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(delete(Task).where(Task.issue_id == issue_id))
            await session.commit()
            return (result.rowcount or 0) > 0

    async def delete_tasks_not_in(
        self, team_id: str, issue_ids: Sequence[str]
    ) -> List[Task]:
        """Delete the team's tasks missing from ``issue_ids`` and return them."""
        stale = await self._all(
            select(Task).where(
                Task.team_id == team_id, Task.issue_id.not_in(list(issue_ids))
            )
        )
        if stale:
            async with self._session() as session:
                await session.execute(
                    delete(Task).where(Task.issue_id.in_([t.issue_id for t in stale]))
                )
                await session.commit()
        return stale

    async def list_tasks_for_sprints(self, sprint_ids: Sequence[str]) -> List[Task]:
        if not sprint_ids:
            return []
        return await self._all(
            select(Task)
            .where(Task.sprint_id.in_(list(sprint_ids)))
            .order_by(Task.issue_key)
        )

    async def list_tasks_for_relink(
        self, sprint_ids: Sequence[str], account_id: Optional[str], member_id: str
    ) -> List[Task]:
        """Tasks carrying ``account_id`` or currently linked to ``member_id``."""
        if not sprint_ids:
            return []
        clauses = [Task.assignee_id == member_id]
        if account_id:
            clauses.append(Task.assignee_account_id == account_id)
        return await self._all(
            select(Task).where(and_(Task.sprint_id.in_(list(sprint_ids)), or_(*clauses)))
        )

    async def set_task_assignee(
        self, issue_ids: Sequence[str], member_id: Optional[str]
    ) -> int:
        if not issue_ids:
            return 0
        async with self._session() as session:
            result = await session.execute(
                update(Task)
                .where(Task.issue_id.in_(list(issue_ids)))
                .values(assignee_id=member_id)
            )
            await session.commit()
            return result.rowcount or 0


class MongoStore:
    """Async storage implementation backed by MongoDB (via Motor)."""

    def __init__(self, conn_string: str, db_name: Optional[str] = None) -> None:
        if not conn_string:
            raise ValueError("MongoDB connection string is required")
        self.client = AsyncIOMotorClient(conn_string, tz_aware=True)
        self.db_name = db_name
        self.db = None

    async def __aenter__(self) -> "MongoStore":
        if self.db_name:
            self.db = self.client[self.db_name]
        else:
            try:
                default_db = self.client.get_default_database()
                self.db = (
                    default_db if default_db is not None else self.client["teamsync"]
                )
            except ConfigurationError:
                raise ValueError(
                    "No default database specified. Please provide a database name "
                    "either via the MONGO_DB_NAME environment variable or include it "
                    "in your MongoDB connection string (e.g., 'mongodb://localhost:27017/mydb')"
                )
        await self.db["commits"].create_index(
            [("team_id", ASCENDING), ("author_email", ASCENDING), ("commit_date", DESCENDING)]
        )
        await self.db["sprints"].create_index(
            [("team_id", ASCENDING), ("jira_sprint_id", ASCENDING)], unique=True
        )
        await self.db["tasks"].create_index([("sprint_id", ASCENDING)])
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.client.close()

    async def create_schema(self) -> None:
        return None

    @staticmethod
    def _to_model(model: Any, doc: Optional[Dict[str, Any]]) -> Any:
        if doc is None:
            return None
        columns = {column.key for column in inspect(model).columns}
        return model(**{k: v for k, v in doc.items() if k in columns})

    async def _find_one(self, collection: str, model: Any, query: Dict[str, Any], **kwargs):
        doc = await self.db[collection].find_one(query, **kwargs)
        return self._to_model(model, doc)

    async def _find(
        self,
        collection: str,
        model: Any,
        query: Dict[str, Any],
        sort: Optional[List[tuple]] = None,
    ) -> List[Any]:
        cursor = self.db[collection].find(query)
        if sort:
            cursor = cursor.sort(sort)
        return [self._to_model(model, doc) async for doc in cursor]

    async def _replace(self, collection: str, key: str, instance: Any) -> Any:
        doc = _with_defaults(instance)
        for column, value in doc.items():
            setattr(instance, column, value)
        doc["_id"] = doc[key]
        await self.db[collection].update_one(
            {"_id": doc["_id"]}, {"$set": doc}, upsert=True
        )
        return instance

    # Users

    async def insert_user(self, user: User) -> User:
        return await self._replace("users", "id", user)

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._find_one("users", User, {"_id": user_id})

    async def get_users(self, user_ids: Sequence[str]) -> List[User]:
        if not user_ids:
            return []
        return await self._find("users", User, {"_id": {"$in": list(user_ids)}})

    async def find_user_by_integration(
        self, provider: str, account_id: str
    ) -> Optional[User]:
        return await self._find_one(
            "users", User, {f"integrations.{provider}.account_id": account_id}
        )

    async def update_user_integrations(
        self, user_id: str, integrations: Dict[str, Any]
    ) -> None:
        await self.db["users"].update_one(
            {"_id": user_id}, {"$set": {"integrations": integrations}}
        )

    # Teams and projects

    async def insert_team(self, team: Team) -> Team:
        return await self._replace("teams", "id", team)

    async def get_team(self, team_id: str) -> Optional[Team]:
        return await self._find_one("teams", Team, {"_id": team_id})

    async def list_teams(self) -> List[Team]:
        return await self._find(
            "teams", Team, {}, sort=[("created_at", ASCENDING), ("_id", ASCENDING)]
        )

    async def record_sync(
        self,
        team_id: str,
        synced_at: datetime,
        entry: Dict[str, Any],
        limit: int,
    ) -> None:
        await self.db["teams"].update_one(
            {"_id": team_id},
            {
                "$set": {"last_sync_at": synced_at},
                "$push": {
                    "sync_history": {"$each": [entry], "$position": 0, "$slice": limit}
                },
            },
        )

    async def insert_project(self, project: Project) -> Project:
        return await self._replace("projects", "id", project)

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self._find_one("projects", Project, {"_id": project_id})

    async def find_project_by_jira_key(self, project_key: str) -> Optional[Project]:
        return await self._find_one(
            "projects",
            Project,
            {"jira_project_key": project_key},
            sort=[("created_at", ASCENDING)],
        )

    # Members

    async def insert_member(self, member: TeamMember) -> TeamMember:
        return await self._replace("team_members", "id", member)

    async def get_member(self, member_id: str) -> Optional[TeamMember]:
        return await self._find_one("team_members", TeamMember, {"_id": member_id})

    async def list_members(
        self, team_id: str, active_only: bool = True
    ) -> List[TeamMember]:
        query: Dict[str, Any] = {"team_id": team_id}
        if active_only:
            query["is_active"] = True
        return await self._find(
            "team_members",
            TeamMember,
            query,
            sort=[("joined_at", ASCENDING), ("_id", ASCENDING)],
        )

    async def find_member_by_jira_account(
        self, team_id: str, account_id: str
    ) -> Optional[TeamMember]:
        return await self._find_one(
            "team_members",
            TeamMember,
            {"team_id": team_id, "jira_account_id": account_id, "is_active": True},
            sort=[("joined_at", ASCENDING), ("_id", ASCENDING)],
        )

    async def find_active_member_by_project(
        self, project_id: str
    ) -> Optional[TeamMember]:
        return await self._find_one(
            "team_members",
            TeamMember,
            {"project_id": project_id, "is_active": True},
            sort=[("joined_at", ASCENDING), ("_id", ASCENDING)],
        )

    async def update_member(self, member_id: str, **values: Any) -> None:
        await self.db["team_members"].update_one({"_id": member_id}, {"$set": values})

    async def set_team_leader(self, team_id: str, member_id: str) -> None:
        await self.db["team_members"].update_many(
            {"team_id": team_id}, {"$set": {"role": ROLE_MEMBER}}
        )
        await self.db["team_members"].update_one(
            {"_id": member_id}, {"$set": {"role": ROLE_LEADER}}
        )

    # Commits

    async def get_commit(self, commit_hash: str) -> Optional[Commit]:
        return await self._find_one("commits", Commit, {"_id": commit_hash})

    async def get_last_counted_commit(
        self, team_id: str, author_email: Optional[str], not_after: datetime
    ) -> Optional[Commit]:
        return await self._find_one(
            "commits",
            Commit,
            {
                "team_id": team_id,
                "author_email": author_email,
                "is_counted": True,
                "commit_date": {"$lte": not_after},
            },
            sort=[("commit_date", DESCENDING)],
        )

    async def upsert_commit(self, commit: Commit) -> None:
        await self._replace("commits", "hash", commit)

    async def touch_commit(
        self, commit_hash: str, branches: List[str], synced_at: datetime
    ) -> None:
        await self.db["commits"].update_one(
            {"_id": commit_hash},
            {"$set": {"branches": branches, "synced_at": synced_at}},
        )

    async def list_commits(
        self, team_id: str, counted_only: bool = False
    ) -> List[Commit]:
        query: Dict[str, Any] = {"team_id": team_id}
        if counted_only:
            query["is_counted"] = True
        return await self._find(
            "commits", Commit, query, sort=[("commit_date", DESCENDING)]
        )

    # Sprints

    @staticmethod
    def _sprint_key(team_id: str, jira_sprint_id: int) -> str:
        return f"{team_id}:{jira_sprint_id}"

    async def upsert_sprint(self, sprint: Sprint) -> Sprint:
        key = self._sprint_key(sprint.team_id, sprint.jira_sprint_id)
        doc = await self.db["sprints"].find_one_and_update(
            {"_id": key},
            {
                "$set": {
                    "team_id": sprint.team_id,
                    "jira_sprint_id": sprint.jira_sprint_id,
                    "name": sprint.name,
                    "state": sprint.state,
                    "start_date": sprint.start_date,
                    "end_date": sprint.end_date,
                },
                "$setOnInsert": {"id": key},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_model(Sprint, doc)

    async def get_or_create_sprint(self, sprint: Sprint) -> Sprint:
        key = self._sprint_key(sprint.team_id, sprint.jira_sprint_id)
        doc = await self.db["sprints"].find_one_and_update(
            {"_id": key},
            {
                "$setOnInsert": {
                    "id": key,
                    "team_id": sprint.team_id,
                    "jira_sprint_id": sprint.jira_sprint_id,
                    "name": sprint.name,
                    "state": sprint.state,
                    "start_date": sprint.start_date,
                    "end_date": sprint.end_date,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_model(Sprint, doc)

    async def get_sprint(self, sprint_id: str) -> Optional[Sprint]:
        return await self._find_one("sprints", Sprint, {"id": sprint_id})

    async def get_sprint_by_external(
        self, team_id: str, jira_sprint_id: int
    ) -> Optional[Sprint]:
        return await self._find_one(
            "sprints", Sprint, {"_id": self._sprint_key(team_id, jira_sprint_id)}
        )

    async def list_sprints(self, team_id: str) -> List[Sprint]:
        return await self._find(
            "sprints",
            Sprint,
            {"team_id": team_id},
            sort=[("start_date", ASCENDING), ("jira_sprint_id", ASCENDING)],
        )

    async def delete_sprints_not_in(
        self, team_id: str, jira_sprint_ids: Sequence[int]
    ) -> List[str]:
        keep = list(set(jira_sprint_ids) | {DEFAULT_SPRINT_EXTERNAL_ID})
        query = {"team_id": team_id, "jira_sprint_id": {"$nin": keep}}
        stale = [doc["id"] async for doc in self.db["sprints"].find(query, {"id": 1})]
        if stale:
            await self.db["sprints"].delete_many({"team_id": team_id, "id": {"$in": stale}})
        return stale

    # Tasks

    async def get_task(self, issue_id: str) -> Optional[Task]:
        return await self._find_one("tasks", Task, {"_id": issue_id})

    async def upsert_task(self, task: Task) -> None:
        await self._replace("tasks", "issue_id", task)

    async def delete_task(self, issue_id: str) -> bool:
        result = await self.db["tasks"].delete_one({"_id": issue_id})
        return result.deleted_count > 0

    async def delete_tasks_not_in(
        self, team_id: str, issue_ids: Sequence[str]
    ) -> List[Task]:
        query = {"team_id": team_id, "_id": {"$nin": list(issue_ids)}}
        stale = await self._find("tasks", Task, query)
        if stale:
            await self.db["tasks"].delete_many(
                {"_id": {"$in": [t.issue_id for t in stale]}}
            )
        return stale

    async def list_tasks_for_sprints(self, sprint_ids: Sequence[str]) -> List[Task]:
        if not sprint_ids:
            return []
        return await self._find(
            "tasks",
            Task,
            {"sprint_id": {"$in": list(sprint_ids)}},
            sort=[("issue_key", ASCENDING)],
        )

    async def list_tasks_for_relink(
        self, sprint_ids: Sequence[str], account_id: Optional[str], member_id: str
    ) -> List[Task]:
        """Tasks carrying ``account_id`` or currently linked to ``member_id``."""
        if not sprint_ids:
            return []
        clauses: List[Dict[str, Any]] = [{"assignee_id": member_id}]
        if account_id:
            clauses.append({"assignee_account_id": account_id})
        return await self._find(
            "tasks",
            Task,
            {"sprint_id": {"$in": list(sprint_ids)}, "$or": clauses},
        )

    async def set_task_assignee(
        self, issue_ids: Sequence[str], member_id: Optional[str]
    ) -> int:
        if not issue_ids:
            return 0
        result = await self.db["tasks"].update_many(
            {"_id": {"$in": list(issue_ids)}}, {"$set": {"assignee_id": member_id}}
        )
        return result.matched_count

