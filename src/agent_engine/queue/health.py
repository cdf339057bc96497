"""Health signal: is the task store (and optionally the reasoning service) reachable."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from agent_engine.executor.reasoning import GeminiClient, ReasoningError
from agent_engine.queue.store import TaskStore

logger = logging.getLogger(__name__)

REASONING_PROBE_PROMPT = "Reply with exactly: OK"


@dataclass(slots=True)
class ProbeResult:
    name: str
    ok: bool
    detail: str


def check_store(database_url: str, *, busy_timeout_ms: int = 5000) -> ProbeResult:
    """Open the store and perform one read; a missing driver counts as unreachable."""

    store: TaskStore | None = None
    try:
        store = TaskStore(database_url, busy_timeout_ms=busy_timeout_ms)
        store.ping()
    except (SQLAlchemyError, ImportError) as exc:
        logger.warning("Task store unreachable: %s", exc)
        return ProbeResult(name="store", ok=False, detail=f"unreachable ({exc.__class__.__name__})")
    finally:
        if store is not None:
            store.close()
    return ProbeResult(name="store", ok=True, detail="reachable")


def check_reasoning(client: GeminiClient) -> ProbeResult:
    try:
        text = client.generate(REASONING_PROBE_PROMPT)
    except ReasoningError as exc:
        logger.warning("Reasoning service unreachable: %s", exc)
        return ProbeResult(name="reasoning", ok=False, detail=f"unreachable ({exc})")
    return ProbeResult(name="reasoning", ok=True, detail=f"reachable ({len(text)} chars)")
