"""Registry of search pipeline executions.

Executions are created ``running`` and move once to ``completed`` or
``failed``; after that they are never written again. Counters only grow.
Every read-modify-write goes through one lock so a cancellation cannot
interleave with a stage update.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional
from uuid import uuid4

from artscout.main.exceptions import ExecutionCancelledError, MalformedIdentifierError
from artscout.main.logging import get_logger
from artscout.search.execution_store import ExecutionStore, InMemoryExecutionStore
from artscout.search.search_models import Execution, ExecutionStatus, utcnow

logger = get_logger(__name__)

CANCELLED_BY_USER = "Cancelled by user"

COUNTER_FIELDS = (
    "queries_generated",
    "queries_executed",
    "opportunities_found",
    "high_quality_opportunities",
)


def _validate_id(execution_id: str) -> None:
    if not isinstance(execution_id, str) or not execution_id.strip():
        raise MalformedIdentifierError("Execution id must be a non-empty string")


class ExecutionTracker:
    def __init__(self, store: Optional[ExecutionStore] = None):
        self.store = store or InMemoryExecutionStore()
        self._lock = asyncio.Lock()

    async def create(self, profile_id: str) -> Execution:
        execution = Execution(id=f"exec_{uuid4().hex}", profile_id=profile_id)
        async with self._lock:
            await self.store.put(execution)
        return execution

    async def get(self, execution_id: str) -> Optional[Execution]:
        _validate_id(execution_id)
        return await self.store.get(execution_id)

    async def is_running(self, execution_id: str) -> bool:
        execution = await self.get(execution_id)
        return execution is not None and not execution.is_terminal

    async def _load_running(self, execution_id: str) -> Execution:
        execution = await self.store.get(execution_id)
        if execution is None or execution.is_terminal:
            raise ExecutionCancelledError(execution_id)
        return execution

    async def update_counters(self, execution_id: str, **counters: int) -> Execution:
        """Raise counters on a running execution; lower values are ignored."""
        _validate_id(execution_id)
        unknown = set(counters) - set(COUNTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown execution counters: {sorted(unknown)}")

        async with self._lock:
            execution = await self._load_running(execution_id)
            for name, value in counters.items():
                setattr(execution, name, max(getattr(execution, name), int(value)))
            await self.store.put(execution)
            return execution

    async def complete(self, execution_id: str) -> Execution:
        _validate_id(execution_id)
        async with self._lock:
            execution = await self._load_running(execution_id)
            execution.status = ExecutionStatus.COMPLETED
            execution.completed_at = utcnow()
            await self.store.put(execution)
            return execution

    async def fail(self, execution_id: str, error: str) -> bool:
        """Mark a running execution failed. Returns False if it already finished."""
        _validate_id(execution_id)
        async with self._lock:
            execution = await self.store.get(execution_id)
            if execution is None or execution.is_terminal:
                return False
            execution.status = ExecutionStatus.FAILED
            execution.error = error or "Unknown error"
            execution.completed_at = utcnow()
            await self.store.put(execution)
            return True

    async def cancel(self, execution_id: str) -> bool:
        cancelled = await self.fail(execution_id, CANCELLED_BY_USER)
        if cancelled:
            logger.info("Execution cancelled", extra={"execution_id": execution_id})
        return cancelled

    async def cleanup(self, older_than: datetime) -> int:
        """Forget finished executions that completed before ``older_than``."""
        removed = 0
        async with self._lock:
            for execution in await self.store.list_all():
                if (
                    execution.is_terminal
                    and execution.completed_at is not None
                    and execution.completed_at < older_than
                ):
                    await self.store.delete(execution.id)
                    removed += 1
        return removed
