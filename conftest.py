"""Shared pytest fixtures: throwaway git repositories and SQLite stores."""

from pathlib import Path
from typing import List

import pytest
from git import Repo

from shared.database import DatabaseManager, StateStore, init_database

JANE = "Jane Doe <jane@example.com>"
OTHER = "Other Dev <other@example.com>"


class GitRepoBuilder:
    """Small helper for building repository histories in tests."""

    def __init__(self, path: Path):
        self.path = path
        self.repo = Repo.init(path)
        with self.repo.config_writer() as config:
            config.set_value("user", "name", "Jane Doe")
            config.set_value("user", "email", "jane@example.com")
            config.set_value("commit", "gpgsign", "false")
            config.set_value("core", "autocrlf", "false")

    def write(self, rel_path: str, lines: List[str]) -> Path:
        target = self.path / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("".join(f"{line}\n" for line in lines))
        return target

    def write_numbered(self, rel_path: str, count: int, prefix: str = "line") -> Path:
        return self.write(rel_path, [f"{prefix} {i}" for i in range(count)])

    def read_lines(self, rel_path: str) -> List[str]:
        return (self.path / rel_path).read_text().splitlines()

    def commit(self, message: str, author: str = JANE) -> str:
        self.repo.git.add("-A")
        self.repo.git.commit("-m", message, f"--author={author}", "--no-verify")
        return self.repo.head.commit.hexsha

    def reset_hard(self, rev: str) -> None:
        self.repo.git.reset("--hard", rev)

    @property
    def head(self) -> str:
        return self.repo.head.commit.hexsha


@pytest.fixture
def git_repo(tmp_path):
    """An empty repository at tmp_path/work."""
    builder = GitRepoBuilder(tmp_path / "work")
    yield builder
    builder.repo.close()


@pytest.fixture
def db_manager(tmp_path):
    """A DatabaseManager over a fresh SQLite file with tables created."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'loc_stats.db'}", echo=False)
    init_database(manager)
    yield manager
    if manager.engine is not None:
        manager.engine.dispose()


@pytest.fixture
async def state_store(db_manager):
    store = StateStore(db_manager)
    yield store
    await db_manager.close()
