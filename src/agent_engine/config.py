"""Runtime configuration for the task engine."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from agent_engine.executor.commit import DEFAULT_GITHUB_API_URL
from agent_engine.executor.reasoning import DEFAULT_GEMINI_BASE_URL, DEFAULT_GEMINI_MODEL


@dataclass(slots=True)
class StoreSettings:
    """Task store connection settings."""

    database_url: str = ""
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class ReasoningSettings:
    """Reasoning-service (Gemini) settings."""

    api_key: str = ""
    model: str = DEFAULT_GEMINI_MODEL
    base_url: str = DEFAULT_GEMINI_BASE_URL
    timeout_seconds: float = 60.0
    project_name: str = "agent-engine"


@dataclass(slots=True)
class GitHubSettings:
    """Commit collaborator settings; optional as a whole."""

    token: str = ""
    repo_owner: str = ""
    repo_name: str = ""
    branch: str = "main"
    api_url: str = DEFAULT_GITHUB_API_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.token and self.repo_owner and self.repo_name)


@dataclass(slots=True)
class WorkerSettings:
    """Poll loop tuning."""

    worker_id: str = field(default_factory=lambda: _default_worker_id())
    poll_interval_ms: int = 10_000
    stale_threshold_ms: int = 60_000
    batch_size: int = 10

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def stale_threshold_seconds(self) -> float:
        return self.stale_threshold_ms / 1000.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    store: StoreSettings = field(default_factory=StoreSettings)
    reasoning: ReasoningSettings = field(default_factory=ReasoningSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, database_url: str | None = None) -> Settings:
        """Load settings from environment; required values are checked by `validate_*`."""

        return cls(
            store=StoreSettings(
                database_url=database_url or os.getenv("AGENT_ENGINE_DATABASE_URL", "").strip(),
                sqlite_busy_timeout_ms=_env_int("AGENT_ENGINE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            reasoning=ReasoningSettings(
                api_key=os.getenv(
                    "AGENT_ENGINE_GEMINI_API_KEY",
                    os.getenv("GEMINI_API_KEY", ""),
                ).strip(),
                model=os.getenv("AGENT_ENGINE_GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
                base_url=os.getenv("AGENT_ENGINE_GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL),
                timeout_seconds=float(
                    os.getenv("AGENT_ENGINE_REASONING_TIMEOUT_SECONDS", "60"),
                ),
                project_name=os.getenv(
                    "AGENT_ENGINE_PROJECT_NAME",
                    os.getenv("PROJECT_NAME", "agent-engine"),
                ),
            ),
            github=GitHubSettings(
                token=os.getenv("AGENT_ENGINE_GITHUB_TOKEN", os.getenv("GITHUB_TOKEN", "")),
                repo_owner=os.getenv(
                    "AGENT_ENGINE_GITHUB_REPO_OWNER",
                    os.getenv("GITHUB_REPO_OWNER", ""),
                ),
                repo_name=os.getenv(
                    "AGENT_ENGINE_GITHUB_REPO_NAME",
                    os.getenv("GITHUB_REPO_NAME", ""),
                ),
                branch=os.getenv("AGENT_ENGINE_GITHUB_BRANCH", os.getenv("GITHUB_BRANCH", "main")),
                api_url=os.getenv("AGENT_ENGINE_GITHUB_API_URL", DEFAULT_GITHUB_API_URL),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("AGENT_ENGINE_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_ms=_env_int(
                    "AGENT_ENGINE_POLL_INTERVAL_MS",
                    os.getenv("ENGINE_POLL_INTERVAL_MS", "10000"),
                ),
                stale_threshold_ms=_env_int("AGENT_ENGINE_STALE_THRESHOLD_MS", "60000"),
                batch_size=_env_int("AGENT_ENGINE_BATCH_SIZE", "10"),
            ),
        )

    def validate_for_store(self) -> None:
        """Raise configuration error if the task store is not configured."""

        if not self.store.database_url:
            raise ValueError(
                "Missing task store endpoint: set AGENT_ENGINE_DATABASE_URL "
                "or pass --database-url.",
            )
        try:
            make_url(self.store.database_url)
        except ArgumentError as error:
            raise ValueError(
                f"Invalid task store URL {self.store.database_url!r} "
                "(AGENT_ENGINE_DATABASE_URL or --database-url); "
                "expected e.g. sqlite:///tasks.db.",
            ) from error
        if self.store.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_ENGINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")

    def validate_for_worker(self) -> None:
        """Raise configuration error unless everything the poll loop needs is set."""

        self.validate_for_store()
        if not self.reasoning.api_key:
            raise ValueError(
                "Missing reasoning-service credential: set AGENT_ENGINE_GEMINI_API_KEY "
                "(or GEMINI_API_KEY).",
            )
        if self.worker.poll_interval_ms <= 0:
            raise ValueError("AGENT_ENGINE_POLL_INTERVAL_MS must be > 0.")
        if self.worker.stale_threshold_ms <= 0:
            raise ValueError("AGENT_ENGINE_STALE_THRESHOLD_MS must be > 0.")
        if self.worker.batch_size <= 0:
            raise ValueError("AGENT_ENGINE_BATCH_SIZE must be > 0.")
        if not self.worker.worker_id:
            raise ValueError("AGENT_ENGINE_WORKER_ID must not be empty.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default).strip()
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error
