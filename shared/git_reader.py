"""
Repository read interface built on GitPython.

Three questions are answered here and nowhere else: where HEAD is, what is
pending in the working tree, and how many lines the author changed across a
commit range. Every GitPython or OS failure surfaces as RepoUnavailable.
"""

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from git import Repo, InvalidGitRepositoryError, NoSuchPathError
from git.exc import GitCommandError, GitError, ODBError

from shared.exceptions import ConfigurationError, RepoUnavailable
from shared.models import PendingChange, RepositorySnapshot

logger = logging.getLogger(__name__)

# Object id of the empty tree; diffing against it treats every line as added.
EMPTY_TREE_SHA = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

COMMIT_MARKER = "@@@"
_LOG_FORMAT = f"--pretty=format:{COMMIT_MARKER}%H\t%an\t%ae"
_AUTHOR_RE = re.compile(r"^\s*(?P<name>.*?)\s*<(?P<email>[^>]*)>\s*$")
_BINARY_SNIFF_BYTES = 8000


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_name(name: str) -> str:
    return name.strip().casefold()


@dataclass(frozen=True)
class AuthorIdentity:
    """Matches commit authors by name, e-mail, or either."""

    name: str = ""
    email: str = ""

    @classmethod
    def parse(cls, identity: str) -> "AuthorIdentity":
        """Accepts ``Name <email>``, a bare e-mail or a bare name."""
        match = _AUTHOR_RE.match(identity)
        if match:
            return cls(name=normalize_name(match["name"]), email=normalize_email(match["email"]))
        value = identity.strip()
        if "@" in value and " " not in value:
            return cls(email=normalize_email(value))
        return cls(name=normalize_name(value))

    def matches(self, author_name: str, author_email: str) -> bool:
        if self.email and normalize_email(author_email) == self.email:
            return True
        if self.name and normalize_name(author_name) == self.name:
            return True
        return False


@dataclass
class CommitRangeStats:
    """Line totals for the author's commits in a range."""

    added: int = 0
    removed: int = 0
    commits: int = 0


def parse_numstat_log(output: str, author: AuthorIdentity) -> CommitRangeStats:
    """Sum ``git log --numstat`` output for commits matching ``author``."""
    stats = CommitRangeStats()
    counting = False
    for line in output.splitlines():
        if line.startswith(COMMIT_MARKER):
            parts = line[len(COMMIT_MARKER):].split("\t")
            name = parts[1] if len(parts) > 1 else ""
            email = parts[2] if len(parts) > 2 else ""
            counting = author.matches(name, email)
            if counting:
                stats.commits += 1
            continue
        if not counting:
            continue
        counts = _parse_numstat_line(line)
        if counts is not None:
            stats.added += counts[0]
            stats.removed += counts[1]
    return stats


def parse_numstat_diff(output: str) -> List[PendingChange]:
    """Turn ``git diff --numstat`` output into pending changes. Binary files are skipped."""
    changes = []
    for line in output.splitlines():
        counts = _parse_numstat_line(line)
        if counts is None:
            continue
        path = line.split("\t", 2)[2]
        if counts[0] or counts[1]:
            changes.append(PendingChange(path=path, added=counts[0], removed=counts[1]))
    return changes


def _parse_numstat_line(line: str):
    parts = line.split("\t", 2)
    if len(parts) < 3:
        return None
    added, removed = parts[0], parts[1]
    # Binary files show as: -\t-\tfilename
    if added == "-" or removed == "-":
        return None
    try:
        return int(added), int(removed)
    except ValueError:
        return None


def count_text_lines(path: Path) -> Optional[int]:
    """Line count as git would report for a new file; None for binary content."""
    data = path.read_bytes()
    if b"\0" in data[:_BINARY_SNIFF_BYTES]:
        return None
    if not data:
        return 0
    return data.count(b"\n") + (0 if data.endswith(b"\n") else 1)


class GitRepositoryReader:
    """Read-only view of one working tree for one author."""

    def __init__(
        self,
        path,
        author: str,
        include_untracked: bool = True,
        include_merges: bool = False,
    ):
        self.path = Path(path)
        self.author = AuthorIdentity.parse(author)
        self.include_untracked = include_untracked
        self.include_merges = include_merges

    @contextmanager
    def _open(self) -> Iterator[Repo]:
        try:
            repo = Repo(self.path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepoUnavailable(self.path, f"not a git repository ({e})") from e
        except OSError as e:
            raise RepoUnavailable(self.path, str(e)) from e
        # Observing must not write to .git (index refreshes would re-trigger the watcher)
        repo.git.update_environment(GIT_OPTIONAL_LOCKS="0")
        try:
            yield repo
        except (GitError, ODBError, OSError) as e:
            raise RepoUnavailable(self.path, str(e)) from e
        except ValueError as e:
            # GitPython reports unreadable or dangling refs as ValueError
            raise RepoUnavailable(self.path, f"corrupt reference: {e}") from e
        finally:
            repo.close()

    def validate(self, repo_id: str) -> List[Path]:
        """Check the path is a non-bare working tree; return the directories to watch."""
        if not self.path.is_dir():
            raise ConfigurationError(repo_id, f"path does not exist: {self.path}")
        try:
            with self._open() as repo:
                if repo.bare:
                    raise ConfigurationError(repo_id, "bare repositories have no working tree")
                working_tree = Path(repo.working_tree_dir).resolve()
                git_dir = Path(repo.git_dir).resolve()
        except RepoUnavailable as e:
            raise ConfigurationError(repo_id, e.reason) from e
        if working_tree != self.path.resolve():
            raise ConfigurationError(repo_id, f"path is not the working tree root ({working_tree})")
        paths = [working_tree]
        if working_tree not in git_dir.parents:
            paths.append(git_dir)
        return paths

    def resolve_head(self) -> Optional[str]:
        """Current HEAD commit, or None on an unborn branch."""
        with self._open() as repo:
            return self._head(repo)

    def committed_changes(self, since: Optional[str], until: str) -> CommitRangeStats:
        """Author line totals over ``(since, until]``; all history up to ``until`` when since is None."""
        with self._open() as repo:
            return self._committed(repo, since, until)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """True when ``ancestor`` is reachable from ``descendant``; unknown commits are not ancestors."""
        with self._open() as repo:
            try:
                return repo.is_ancestor(ancestor, descendant)
            except GitCommandError:
                if not self._commit_exists(repo, ancestor):
                    return False
                raise

    def take_snapshot(self, repo_id: str) -> RepositorySnapshot:
        """Read HEAD and pending changes in one pass."""
        with self._open() as repo:
            head = self._head(repo)
            pending = self._pending(repo, head)
        return RepositorySnapshot(repo_id=repo_id, head_commit=head, pending_changes=tuple(pending))

    def _head(self, repo: Repo) -> Optional[str]:
        if not repo.head.is_valid():
            return None
        return repo.head.commit.hexsha

    def _pending(self, repo: Repo, head: Optional[str]) -> List[PendingChange]:
        output = repo.git.diff(head or EMPTY_TREE_SHA, "--numstat", "--no-renames", "--no-color")
        changes = {change.path: change for change in parse_numstat_diff(output)}
        if self.include_untracked:
            for change in self._untracked(repo):
                changes.setdefault(change.path, change)
        return [changes[path] for path in sorted(changes)]

    def _untracked(self, repo: Repo) -> List[PendingChange]:
        output = repo.git.ls_files("--others", "--exclude-standard", "-z")
        changes = []
        for rel_path in output.split("\0"):
            if not rel_path:
                continue
            file_path = Path(repo.working_tree_dir) / rel_path
            if not file_path.is_file():
                continue
            try:
                lines = count_text_lines(file_path)
            except FileNotFoundError:
                # Deleted between listing and reading
                continue
            if lines:
                changes.append(PendingChange(path=rel_path, added=lines, removed=0))
        return changes

    def _committed(self, repo: Repo, since: Optional[str], until: str) -> CommitRangeStats:
        rev = until if since is None else f"{since}..{until}"
        args = [rev, "--numstat", "--no-renames", "--no-color", _LOG_FORMAT]
        if not self.include_merges:
            args.insert(0, "--no-merges")
        output = repo.git.log(*args)
        return parse_numstat_log(output, self.author)

    def _commit_exists(self, repo: Repo, rev: str) -> bool:
        try:
            repo.git.cat_file("-e", f"{rev}^{{commit}}")
        except GitCommandError:
            return False
        return True
