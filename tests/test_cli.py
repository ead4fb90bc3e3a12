"""
Unit tests for hubzone/cli.py
"""
import json
from datetime import datetime

import pytest

from hubzone.cli import EXIT_FAILED, EXIT_OK, EXIT_USAGE, build_parser, main, parse_states
from hubzone.core.database import session_scope
from hubzone.core.models import ExecutionStatus, ImportExecution, TriggerType


@pytest.fixture
def cli_env(clean_env, db_url, tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("CACHE_DIRECTORY", str(tmp_path / "cache"))
    yield


def _seed_execution(execution_id, status=ExecutionStatus.COMPLETED):
    with session_scope() as db:
        db.add(ImportExecution(
            id=execution_id,
            job_id="hubzone_map_update",
            trigger_type=TriggerType.MANUAL,
            triggered_by="cli",
            status=status,
            options={"dry_run": True},
            started_at=datetime(2026, 1, 1),
            errors=[],
            warnings=[],
        ))


@pytest.mark.unit
class TestParseStates:

    def test_none(self):
        assert parse_states(None) is None
        assert parse_states([]) is None

    def test_comma_separated_and_repeated(self):
        assert parse_states(["06,36", " 11 "]) == ["06", "36", "11"]

    def test_blank_values(self):
        assert parse_states([" , "]) is None


@pytest.mark.unit
class TestParser:

    def test_run_flags(self):
        args = build_parser().parse_args(["run", "--dry-run", "--state", "DC", "--state", "24"])
        assert args.command == "run"
        assert args.dry_run is True
        assert args.no_notify is False
        assert args.state == ["DC", "24"]
        assert args.triggered_by == "cli"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


@pytest.mark.unit
class TestCommands:

    def test_history_lists_executions(self, cli_env, capsys):
        assert main(["history"]) == EXIT_OK
        assert json.loads(capsys.readouterr().out) == []

        _seed_execution("exec_seeded")
        assert main(["history", "--limit", "5"]) == EXIT_OK
        rows = json.loads(capsys.readouterr().out)
        assert [r["id"] for r in rows] == ["exec_seeded"]

    def test_show_unknown_execution(self, cli_env, capsys):
        assert main(["show", "exec_missing"]) == EXIT_FAILED
        assert "not found" in capsys.readouterr().err

    def test_show_execution(self, cli_env, capsys):
        main(["history"])
        _seed_execution("exec_seeded")
        capsys.readouterr()

        assert main(["show", "exec_seeded"]) == EXIT_OK
        detail = json.loads(capsys.readouterr().out)
        assert detail["id"] == "exec_seeded"
        assert detail["status"] == "completed"

    def test_cancel_finished_execution(self, cli_env, capsys):
        main(["history"])
        _seed_execution("exec_done")

        assert main(["cancel", "exec_done"]) == EXIT_FAILED
        assert "already finished" in capsys.readouterr().out

    def test_run_rejects_unknown_state(self, cli_env, capsys):
        assert main(["run", "--state", "ZZ"]) == EXIT_USAGE
        assert "Invalid options" in capsys.readouterr().err

    def test_async_handler_is_awaited(self, cli_env, monkeypatch):
        calls = []

        async def fake_run(args):
            calls.append(("run", args.dry_run))
            return EXIT_OK

        monkeypatch.setattr("hubzone.cli.cmd_run", fake_run)
        assert main(["run", "--dry-run"]) == EXIT_OK
        assert calls == [("run", True)]

    def test_sync_handler_is_called_directly(self, cli_env, monkeypatch):
        monkeypatch.setattr("hubzone.cli.cmd_evict_cache", lambda args: EXIT_FAILED)
        assert main(["evict-cache"]) == EXIT_FAILED
