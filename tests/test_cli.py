import asyncio
import json
import re

import pytest

import cli
from models.teams import ROLE_LEADER, Project, Team, TeamMember, User
from storage import SQLAlchemyStore

CLI_KEY = "ab" * 32


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    """Environment for CLI runs against a temporary SQLite database."""
    monkeypatch.setenv("DISABLE_DOTENV", "1")
    monkeypatch.setenv("ENCRYPTION_KEY", CLI_KEY)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DB_CONN_STRING", raising=False)
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


def _seed(db_url):
    async def seed():
        async with SQLAlchemyStore(db_url) as store:
            team = await store.insert_team(
                Team(name="Alpha", jira_board_id=7, jira_project_key="ALPHA", sync_history=[])
            )
            project = await store.insert_project(
                Project(name="Alpha", team_id=team.id, jira_project_key="ALPHA")
            )
            user = await store.insert_user(
                User(email="dev@example.com", full_name="Dana Dev", integrations={})
            )
            member = await store.insert_member(
                TeamMember(
                    team_id=team.id,
                    user_id=user.id,
                    project_id=project.id,
                    role=ROLE_LEADER,
                    jira_account_id="acc-dev",
                )
            )
            return team.id, member.id

    return asyncio.run(seed())


def _issue_event(event="jira:issue_created"):
    return {
        "webhookEvent": event,
        "issue": {
            "id": "40001",
            "key": "ALPHA-40",
            "fields": {
                "summary": "Replayed task",
                "status": {"name": "Done", "statusCategory": {"key": "done"}},
                "assignee": {"accountId": "acc-dev"},
                "project": {"key": "ALPHA"},
                "customfield_10026": 3,
            },
        },
    }


class TestParser:
    """Test CLI argument parsing."""

    @pytest.mark.parametrize(
        "argv,func",
        [
            (["sync", "team", "--team-id", "t1"], cli._cmd_sync_team),
            (["sync", "all"], cli._cmd_sync_all),
            (["metrics", "ranking", "--team-id", "t1"], cli._cmd_metrics_ranking),
            (["metrics", "dashboard", "--team-id", "t1"], cli._cmd_metrics_dashboard),
            (["members", "map", "--member-id", "m1"], cli._cmd_members_map),
            (
                ["team", "leader-sync", "--team-id", "t1", "--user-id", "u1"],
                cli._cmd_team_leader_sync,
            ),
            (["webhook", "replay", "--file", "x.json"], cli._cmd_webhook_replay),
            (["vault", "generate-key"], cli._cmd_vault_generate_key),
            (["db", "init"], cli._cmd_db_init),
        ],
    )
    def test_subcommands(self, argv, func):
        ns = cli.build_parser().parse_args(argv)
        assert ns.func is func

    def test_db_args(self):
        ns = cli.build_parser().parse_args(
            ["sync", "team", "--team-id", "t1", "--db", "mongodb://x", "--db-type", "mongo"]
        )
        assert ns.db == "mongodb://x"
        assert ns.db_type == "mongo"
        assert ns.user_id is None

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_invalid_db_type(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["sync", "all", "--db-type", "oracle"])


class TestResolveDbType:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("sqlite+aiosqlite:///x.db", "sqlite"),
            ("postgresql+asyncpg://u:p@h/db", "postgres"),
            ("mongodb://localhost:27017", "mongo"),
        ],
    )
    def test_detected(self, url, expected):
        assert cli._resolve_db_type(url, None) == expected

    def test_override(self):
        assert cli._resolve_db_type("sqlite:///x.db", "MONGO") == "mongo"

    def test_unknown_scheme(self):
        with pytest.raises(SystemExit):
            cli._resolve_db_type("oracle://nope", None)


class TestLoadDotenv:
    def test_does_not_override_existing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEAMSYNC_EXISTING", "keep")
        monkeypatch.delenv("TEAMSYNC_NEW", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# comment\nexport TEAMSYNC_NEW='hello'\nTEAMSYNC_EXISTING=replace\nnoequals\n",
            encoding="utf-8",
        )

        assert cli._load_dotenv(env_file) == 1
        assert cli.os.environ["TEAMSYNC_NEW"] == "hello"
        assert cli.os.environ["TEAMSYNC_EXISTING"] == "keep"
        monkeypatch.delenv("TEAMSYNC_NEW")

    def test_missing_file(self, tmp_path):
        assert cli._load_dotenv(tmp_path / "absent.env") == 0


class TestCommands:
    def test_vault_generate_key(self, cli_env, capsys):
        assert cli.main(["vault", "generate-key"]) == 0
        key = capsys.readouterr().out.strip()
        assert re.fullmatch(r"[0-9a-f]{64}", key)

    def test_db_init(self, cli_env, capsys):
        assert cli.main(["db", "init", "--db", cli_env]) == 0
        assert json.loads(capsys.readouterr().out) == {"schema": "ready"}

    def test_webhook_replay_then_metrics(self, cli_env, tmp_path, capsys):
        team_id, member_id = _seed(cli_env)
        payload_file = tmp_path / "events.json"
        payload_file.write_text(
            json.dumps([_issue_event(), {"webhookEvent": "sprint_started"}]),
            encoding="utf-8",
        )

        assert cli.main(["webhook", "replay", "--file", str(payload_file), "--db", cli_env]) == 0
        replay = json.loads(capsys.readouterr().out)
        assert [ack["handled"] for ack in replay["acks"]] == [True, False]
        assert replay["acks"][0]["action"] == "created"
        assert replay["events"][0]["scope"] == f"team:{team_id}"

        assert cli.main(["metrics", "ranking", "--team-id", team_id, "--db", cli_env]) == 0
        ranking = json.loads(capsys.readouterr().out)
        assert ranking[0]["member_id"] == member_id
        assert ranking[0]["jira"]["done_story_points"] == 3.0

        assert cli.main(["metrics", "dashboard", "--team-id", team_id, "--db", cli_env]) == 0
        dashboard = json.loads(capsys.readouterr().out)
        assert dashboard["tasks"]["done_percent"] == 100

    def test_unreadable_payload_file(self, cli_env, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        with pytest.raises(SystemExit):
            cli.main(["webhook", "replay", "--file", str(bad), "--db", cli_env])

    def test_domain_error_exits_non_zero(self, cli_env):
        _seed(cli_env)
        assert cli.main(["metrics", "ranking", "--team-id", "missing", "--db", cli_env]) == 1

    def test_members_map(self, cli_env, capsys):
        _, member_id = _seed(cli_env)
        argv = ["members", "map", "--member-id", member_id, "--github-username", "dana"]
        assert cli.main(argv + ["--db", cli_env]) == 0
        result = json.loads(capsys.readouterr().out)
        assert result["github_username"] == "dana"
        assert result["jira_account_id"] == "acc-dev"

    def test_sync_team_without_credentials(self, cli_env, capsys):
        team_id, _ = _seed(cli_env)
        assert cli.main(["sync", "team", "--team-id", team_id, "--db", cli_env]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["team_id"] == team_id
        assert len(summary["skipped"]) == 2
