"""Reasoning-service executor backed by the Gemini generateContent API."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from agent_engine.executor.base import StepContext
from agent_engine.queue.models import LogLevel, TaskView

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 2


class ReasoningError(RuntimeError):
    """Reasoning service call failed or returned an unusable payload."""


class GeminiClient:
    """Minimal text-generation client for the Gemini REST API."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str = DEFAULT_GEMINI_MODEL,
        base_url: str = DEFAULT_GEMINI_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Gemini API key is missing.")
        self.model = model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def generate(self, prompt: str) -> str:
        """Send one prompt and return the concatenated text of the first candidate."""

        try:
            response = self._client.post(
                f"/models/{self.model}:generateContent",
                json={"contents": [{"role": "user", "parts": [{"text": prompt}]}]},
            )
        except httpx.HTTPError as exc:
            raise ReasoningError(f"Gemini request failed: {exc}") from exc

        if not response.is_success:
            raise ReasoningError(
                f"Gemini returned HTTP {response.status_code}: {_error_detail(response)}",
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise ReasoningError("Gemini returned a non-JSON response.") from exc
        return _extract_text(payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GeminiClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class ReasoningStepExecutor:
    """Ask the reasoning service about a task and return its answer as output."""

    def __init__(self, *, client: GeminiClient, project_name: str) -> None:
        self.client = client
        self.project_name = project_name

    def run(self, task: TaskView, context: StepContext) -> dict[str, Any]:
        context.checkpoint("reasoning_call")
        prompt = build_prompt(task=task, project_name=self.project_name)
        try:
            text = self.client.generate(prompt)
        except ReasoningError as exc:
            context.log("reasoning_error", {"error": str(exc)}, level=LogLevel.ERROR)
            raise

        logger.info("Reasoning service responded for task %s (%d chars)", task.id, len(text))
        context.log("reasoning_response", {"response": text})
        return {"reasoning_response": text}


def build_prompt(*, task: TaskView, project_name: str) -> str:
    task_input = json.dumps(task.input or {}, ensure_ascii=False, indent=2, sort_keys=True)
    return (
        f"You are an autonomous agent for project {project_name}.\n"
        f"Task type: {task.type}\n"
        f"Input: {task_input}\n\n"
        "Please process this task and provide your response."
    )


def _extract_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise ReasoningError("Gemini response is not a JSON object.")
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = payload.get("promptFeedback")
        raise ReasoningError(f"Gemini returned no candidates (feedback={feedback!r}).")
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise ReasoningError("Gemini candidate has no content parts.")
    text = "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    ).strip()
    if not text:
        raise ReasoningError("Gemini returned an empty response.")
    return text


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except json.JSONDecodeError:
        return response.text[:300]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return response.text[:300]
