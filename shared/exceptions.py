"""Error taxonomy for the LoC tracker."""


class LocTrackerError(Exception):
    """Base class for tracker errors."""


class RepoUnavailable(LocTrackerError):
    """Raised when a repository cannot be read right now (I/O, permissions, git failure)."""

    def __init__(self, repo_path, reason: str):
        self.repo_path = str(repo_path)
        self.reason = reason
        super().__init__(f"Repository unavailable: {self.repo_path}: {reason}")


class StoreFailure(LocTrackerError):
    """Raised when the persistent store cannot complete an operation."""


class ConfigurationError(LocTrackerError):
    """Raised when a configured repository is missing or is not a git working tree."""

    def __init__(self, repo_id: str, reason: str):
        self.repo_id = repo_id
        self.reason = reason
        super().__init__(f"Invalid repository '{repo_id}': {reason}")
