from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, List, Optional

import orjson
import redis.asyncio as aioredis

from artscout.search.search_models import Execution


class ExecutionStore(ABC):
    """Key-value storage for executions, keyed by execution id."""

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[Execution]: ...

    @abstractmethod
    async def put(self, execution: Execution) -> None: ...

    @abstractmethod
    async def delete(self, execution_id: str) -> None: ...

    @abstractmethod
    async def list_all(self) -> List[Execution]: ...


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store; contents are lost on restart."""

    def __init__(self):
        self._executions: Dict[str, Execution] = {}

    async def get(self, execution_id: str) -> Optional[Execution]:
        execution = self._executions.get(execution_id)
        return execution.model_copy() if execution is not None else None

    async def put(self, execution: Execution) -> None:
        self._executions[execution.id] = execution.model_copy()

    async def delete(self, execution_id: str) -> None:
        self._executions.pop(execution_id, None)

    async def list_all(self) -> List[Execution]:
        return [execution.model_copy() for execution in self._executions.values()]


class RedisExecutionStore(ExecutionStore):
    """Shares execution state between instances; entries expire after ``ttl_seconds``."""

    KEY_PREFIX = "search_executions"

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 60 * 60 * 24):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    def _key(self, execution_id: str) -> str:
        return f"{self.KEY_PREFIX}:{execution_id}"

    @property
    def _index_key(self) -> str:
        return f"{self.KEY_PREFIX}:index"

    async def get(self, execution_id: str) -> Optional[Execution]:
        raw = await self.redis.get(self._key(execution_id))
        if raw is None:
            return None
        return Execution.model_validate(orjson.loads(raw))

    async def put(self, execution: Execution) -> None:
        # Every write extends the entry's lifetime by the full TTL
        await self.redis.setex(
            self._key(execution.id),
            timedelta(seconds=self.ttl_seconds),
            orjson.dumps(execution.model_dump(mode="json")),
        )
        await self.redis.sadd(self._index_key, execution.id)

    async def delete(self, execution_id: str) -> None:
        await self.redis.delete(self._key(execution_id))
        await self.redis.srem(self._index_key, execution_id)

    async def list_all(self) -> List[Execution]:
        executions: List[Execution] = []
        for member in await self.redis.smembers(self._index_key):
            execution_id = member.decode("utf-8") if isinstance(member, bytes) else member
            execution = await self.get(execution_id)
            if execution is None:
                # Expired entry; drop it from the index
                await self.redis.srem(self._index_key, execution_id)
                continue
            executions.append(execution)
        return executions
