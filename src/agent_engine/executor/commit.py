"""Commit collaborator: write one file to a GitHub repository branch."""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from agent_engine.executor.base import StepContext
from agent_engine.queue.models import TaskView

logger = logging.getLogger(__name__)

DEFAULT_GITHUB_API_URL = "https://api.github.com"


class CommitError(RuntimeError):
    """Commit collaborator call failed."""


class GitHubCommitter:
    """Create or update a single file through the GitHub Contents API."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        token: str,
        owner: str,
        repo: str,
        branch: str = "main",
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=transport,
        )

    def commit_file(self, *, path: str, content: str, message: str) -> str:
        """Commit `content` to `path`; returns the new commit sha."""

        url = f"/repos/{self.owner}/{self.repo}/contents/{path.lstrip('/')}"
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        existing_sha = self._existing_sha(url)
        if existing_sha is not None:
            body["sha"] = existing_sha

        try:
            response = self._client.put(url, json=body)
        except httpx.HTTPError as exc:
            raise CommitError(f"GitHub commit request failed for {path}: {exc}") from exc
        if not response.is_success:
            raise CommitError(
                f"GitHub commit failed for {path}: "
                f"HTTP {response.status_code} {response.text[:300]}",
            )
        commit = response.json().get("commit") or {}
        commit_sha = str(commit.get("sha") or "")
        logger.info("Committed %s to %s/%s@%s", path, self.owner, self.repo, self.branch)
        return commit_sha

    def _existing_sha(self, url: str) -> str | None:
        try:
            response = self._client.get(url, params={"ref": self.branch})
        except httpx.HTTPError as exc:
            raise CommitError(f"GitHub lookup failed for {url}: {exc}") from exc
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise CommitError(f"GitHub lookup failed for {url}: HTTP {response.status_code}")
        data = response.json()
        # Directories come back as a list; only a file has a usable sha.
        if isinstance(data, dict) and data.get("type") == "file":
            return data.get("sha")
        return None

    def close(self) -> None:
        self._client.close()


class CommitStepExecutor:
    """Executor for `commit_file` tasks: input carries path, content and message."""

    def __init__(self, *, committer: GitHubCommitter | None) -> None:
        self.committer = committer

    def run(self, task: TaskView, context: StepContext) -> dict[str, Any]:
        if self.committer is None:
            raise RuntimeError(
                "GitHub commit collaborator is not configured "
                "(set AGENT_ENGINE_GITHUB_TOKEN, _REPO_OWNER and _REPO_NAME).",
            )
        payload = task.input or {}
        path = _required_str(payload, "path")
        content = payload.get("content")
        if not isinstance(content, str):
            raise ValueError("commit_file input requires string field 'content'.")
        message = _required_str(payload, "message")

        context.checkpoint("commit_pending", {"path": path})
        commit_sha = self.committer.commit_file(path=path, content=content, message=message)
        context.log("commit_pushed", {"path": path, "commit_sha": commit_sha})
        return {"path": path, "commit_sha": commit_sha}


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"commit_file input requires non-empty string field {key!r}.")
    return value
