"""
Unit tests for the command-line interface.

Commands run through click's CliRunner against real repositories and a
temporary SQLite database.
"""

import json

import pytest
from click.testing import CliRunner

from config.settings import Settings
from conftest import JANE
from services.loc_tracker.cli import build_settings, cli
from shared.database import DatabaseManager, init_database


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cli.db'}"


def invoke(runner, db_url, *args, **kwargs):
    return runner.invoke(cli, ["--db", db_url, *args], catch_exceptions=False, **kwargs)


@pytest.fixture
def empty_store(db_url):
    """A store with the schema created and nothing reconciled."""
    manager = init_database(DatabaseManager(db_url, echo=False))
    manager.engine.dispose()
    return db_url


class TestBuildSettings:
    """Test cases for command-line overrides."""

    def test_paths_and_database(self, git_repo, db_url):
        config = build_settings(Settings(), [str(git_repo.path)], JANE, db_url)
        assert config.repositories[0].repo_id == "work"
        assert config.database.url == db_url

    def test_watcher_overrides(self):
        config = build_settings(Settings(), [], None, debounce=0.5, poll=10)
        assert config.watcher.debounce_seconds == 0.5
        assert config.watcher.fallback_poll_seconds == 10

    def test_invalid_watcher_override(self):
        with pytest.raises(ValueError):
            build_settings(Settings(), [], None, debounce=-1)


class TestReconcileCommand:
    """Test cases for the reconcile command."""

    def test_reconcile_prints_totals(self, runner, db_url, git_repo):
        git_repo.write_numbered("main.py", 12)
        git_repo.commit("initial")
        git_repo.write_numbered("wip.py", 3)

        result = invoke(runner, db_url, "reconcile", str(git_repo.path), "--author", JANE)

        assert result.exit_code == 0
        assert "work: 12 LoC committed, 3 LoC In Progress" in result.output

    def test_author_required_with_paths(self, runner, db_url, git_repo):
        result = invoke(runner, db_url, "reconcile", str(git_repo.path))
        assert result.exit_code == 1
        assert "author is required" in result.output

    def test_not_a_repository(self, runner, db_url, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        result = invoke(runner, db_url, "reconcile", str(plain), "--author", JANE)
        assert result.exit_code == 1
        assert "configuration error" in result.output

    def test_missing_path_is_a_usage_error(self, runner, db_url, tmp_path):
        result = invoke(runner, db_url, "reconcile", str(tmp_path / "nope"), "--author", JANE)
        assert result.exit_code == 2


class TestReportCommands:
    """Test cases for report, history and forget."""

    @pytest.fixture
    def reconciled(self, runner, db_url, git_repo):
        git_repo.write_numbered("main.py", 20)
        git_repo.commit("initial")
        result = invoke(runner, db_url, "reconcile", str(git_repo.path), "--author", JANE)
        assert result.exit_code == 0
        return git_repo

    def test_report_empty(self, runner, empty_store):
        result = invoke(runner, empty_store, "report")
        assert result.exit_code == 0
        assert "No repositories have been reconciled yet" in result.output

    def test_report_table(self, runner, db_url, reconciled):
        result = invoke(runner, db_url, "report")
        assert result.exit_code == 0
        assert "work" in result.output
        assert "20" in result.output

    def test_report_json(self, runner, db_url, reconciled):
        result = invoke(runner, db_url, "report", "--json", "--stale-after", "3600")
        payload = json.loads(result.stdout)

        assert payload["repositories"][0]["repo_id"] == "work"
        assert payload["repositories"][0]["committed_loc"] == 20
        assert payload["repositories"][0]["stale"] is False
        assert payload["totals"] == {"repositories": 1, "committed_loc": 20, "pending_loc": 0, "total": 20}

    def test_history(self, runner, db_url, reconciled):
        result = invoke(runner, db_url, "history", "work")
        assert result.exit_code == 0
        assert "manual" in result.output

    def test_history_unknown(self, runner, empty_store):
        result = invoke(runner, empty_store, "history", "nothing")
        assert "No history for nothing" in result.output

    def test_forget(self, runner, db_url, reconciled):
        result = invoke(runner, db_url, "forget", "work", "--yes")
        assert result.exit_code == 0
        assert "Removed work" in result.output

        report = invoke(runner, db_url, "report", "--json")
        assert json.loads(report.stdout)["repositories"] == []

    def test_forget_asks_first(self, runner, db_url, reconciled):
        result = invoke(runner, db_url, "forget", "work", input="n\n")
        assert "Aborted" in result.output

        report = invoke(runner, db_url, "report", "--json")
        assert len(json.loads(report.stdout)["repositories"]) == 1

    def test_forget_unknown(self, runner, empty_store):
        result = invoke(runner, empty_store, "forget", "ghost", "--yes")
        assert result.exit_code == 1
        assert "unknown repository" in result.output

    @pytest.mark.parametrize(
        "args", [["report"], ["report", "--json"], ["history", "work"], ["forget", "work", "--yes"]]
    )
    def test_missing_store_is_not_created(self, runner, db_url, tmp_path, args):
        result = invoke(runner, db_url, *args)

        assert result.exit_code == 1
        assert "no LoC store" in result.output
        assert not (tmp_path / "cli.db").exists()


class TestWatchCommand:
    def test_nothing_to_watch(self, runner, db_url):
        result = invoke(runner, db_url, "watch")
        assert result.exit_code == 1
        assert "no valid repositories" in result.output
