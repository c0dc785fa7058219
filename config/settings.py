"""
Configuration management for the LoC tracker.

This module provides centralized configuration with:
- Nested, typed settings sections
- Environment variable and .env overrides
- Validation of tracked repository entries
- Database URL derivation for sync and async engines
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class DatabaseSettings(BaseModel):
    """Database configuration settings."""

    url: str = Field(default="sqlite:///loc_stats.db", description="Database connection URL")
    echo: bool = Field(default=False, description="Enable SQL logging")

    @field_validator("url")
    @classmethod
    def validate_database_url(cls, v):
        if not v.startswith(("sqlite://", "postgresql://", "postgres://")):
            raise ValueError("Database URL must be SQLite or PostgreSQL")
        return v


class WatcherSettings(BaseModel):
    """Filesystem watcher configuration settings."""

    debounce_seconds: float = Field(default=2.0, gt=0, description="Quiet period before a trigger")
    fallback_poll_seconds: float = Field(
        default=60.0, gt=0, description="Polling interval when filesystem events are unavailable"
    )
    max_wait_seconds: Optional[float] = Field(
        default=None, description="Longest a sustained burst may postpone a trigger"
    )

    @field_validator("max_wait_seconds")
    @classmethod
    def validate_max_wait(cls, v, info):
        if v is None:
            return v
        debounce = info.data.get("debounce_seconds")
        if debounce is not None and v < debounce:
            raise ValueError("max_wait_seconds cannot be shorter than debounce_seconds")
        return v


class ReconcileSettings(BaseModel):
    """Reconciliation and retry configuration settings."""

    retry_initial_seconds: float = Field(default=1.0, gt=0, description="First retry delay")
    retry_max_seconds: float = Field(default=300.0, gt=0, description="Retry delay cap")
    retry_multiplier: float = Field(default=2.0, ge=1, description="Backoff growth factor")
    include_untracked: bool = Field(default=True, description="Count untracked files as pending")
    include_merges: bool = Field(default=False, description="Fold merge commits into totals")


class MonitoringSettings(BaseModel):
    """Logging configuration settings."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log record format",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


class RepositoryConfig(BaseModel):
    """One tracked repository and the author whose changes are counted."""

    repo_id: str = Field(default="", description="Stable repository identifier")
    path: Path = Field(..., description="Working tree root")
    author: str = Field(..., min_length=1, description="Author name, e-mail or 'Name <email>'")

    @field_validator("path")
    @classmethod
    def resolve_path(cls, v):
        return Path(v).expanduser().resolve()

    @field_validator("author")
    @classmethod
    def validate_author(cls, v):
        if not v.strip():
            raise ValueError("Author identity cannot be blank")
        return v.strip()

    @model_validator(mode="after")
    def default_repo_id(self):
        if not self.repo_id:
            self.repo_id = self.path.name or str(self.path)
        return self


class Settings(BaseSettings):
    """
    Main application settings.

    Values come from (highest first) init arguments, environment variables
    prefixed with ``LOC_TRACKER_`` and a local ``.env`` file. Nested fields use
    ``__`` as delimiter, e.g. ``LOC_TRACKER_WATCHER__DEBOUNCE_SECONDS=5``.
    """

    app_name: str = Field(default="LocTracker", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    repositories: List[RepositoryConfig] = Field(default_factory=list)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        valid_environments = ["development", "testing", "production"]
        if v not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v

    @field_validator("repositories")
    @classmethod
    def validate_unique_repo_ids(cls, v):
        seen = set()
        for repo in v:
            if repo.repo_id in seen:
                raise ValueError(f"Duplicate repo_id: {repo.repo_id}")
            seen.add(repo.repo_id)
        return v

    def with_repositories(self, paths: List[str], author: Optional[str]) -> "Settings":
        """Return a copy with repositories given on the command line appended."""
        if not paths:
            return self
        if not author:
            raise ValueError("An author is required when repository paths are given")
        extra = [RepositoryConfig(path=p, author=author) for p in paths]
        known = {repo.repo_id for repo in self.repositories}
        merged = list(self.repositories)
        for repo in extra:
            if repo.repo_id in known:
                raise ValueError(f"Duplicate repo_id: {repo.repo_id}")
            known.add(repo.repo_id)
            merged.append(repo)
        return self.model_copy(update={"repositories": merged})

    model_config = {
        "env_prefix": "LOC_TRACKER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Example:
        >>> settings = get_settings()
        >>> print(settings.database.url)
    """
    return Settings()


# Global settings instance
settings = get_settings()


def get_database_url(config: Optional[Settings] = None) -> str:
    """Get the synchronous database URL."""
    config = config or settings
    url = config.database.url
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def get_async_database_url(config: Optional[Settings] = None) -> str:
    """Get the database URL for the asyncio engine."""
    return to_async_url(get_database_url(config))


def to_async_url(url: str) -> str:
    """Swap the driver part of a URL for its asyncio driver."""
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def sqlite_path(url: str) -> Optional[Path]:
    """Resolved database file of a SQLite URL; None for in-memory or other backends."""
    if not url.startswith("sqlite:///") or url == "sqlite:///:memory:":
        return None
    return Path(url[len("sqlite:///"):]).expanduser().resolve()


def store_files(url: str) -> List[Path]:
    """The SQLite file and its journal siblings (empty for non-file databases)."""
    db_path = sqlite_path(url)
    if db_path is None:
        return []
    return [db_path] + [
        db_path.with_name(db_path.name + suffix) for suffix in ("-wal", "-shm", "-journal")
    ]


def validate_configuration(config: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Validate configuration and return validation results.

    Example:
        >>> validation = validate_configuration()
        >>> if not validation['valid']:
        >>>     print("Configuration errors:", validation['errors'])
    """
    config = config or settings
    errors = []
    warnings = []

    if not config.repositories:
        warnings.append("No repositories configured")

    for repo in config.repositories:
        if not repo.path.exists():
            errors.append(f"Repository path does not exist: {repo.path}")

    db_path = sqlite_path(get_database_url(config))
    if db_path is not None:
        for repo in config.repositories:
            if repo.path in db_path.parents:
                warnings.append(
                    f"Database file {db_path} lives inside tracked repository {repo.repo_id}; "
                    "it is excluded from filesystem triggers but git will list it as untracked"
                )

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "environment": config.environment,
        "repositories": [repo.repo_id for repo in config.repositories],
    }


def export_config(config: Optional[Settings] = None) -> Dict[str, Any]:
    """Export configuration for display."""
    config = config or settings
    return {
        "app_name": config.app_name,
        "version": config.version,
        "environment": config.environment,
        "database": {"url": get_database_url(config), "echo": config.database.echo},
        "watcher": config.watcher.model_dump(),
        "reconcile": config.reconcile.model_dump(),
        "monitoring": {"log_level": config.monitoring.log_level},
        "repositories": [
            {"repo_id": repo.repo_id, "path": str(repo.path), "author": repo.author}
            for repo in config.repositories
        ],
    }


if __name__ == "__main__":
    """Configuration validation script."""
    import json

    validation = validate_configuration()

    print("Configuration Validation:")
    print(json.dumps(validation, indent=2))

    print("\nConfiguration Export:")
    print(json.dumps(export_config(), indent=2))

    if not validation["valid"]:
        exit(1)
