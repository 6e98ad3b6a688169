"""Lua scripts backing the Redis queue store.

Every state transition that touches more than one key runs as a single
script so that concurrent workers, possibly in different processes, never
observe a job in two buckets or lose one between them.

Key layout for queue ``q`` under prefix ``p``:

    p:q:jobs       HASH   job id -> job JSON
    p:q:scores     HASH   job id -> waiting score (rank * 1e12 + sequence)
    p:q:attempts   HASH   job id -> attempts started
    p:q:max        HASH   job id -> max attempts
    p:q:stalled    HASH   job id -> why the last hold ended without an outcome
    p:q:seq        STRING enqueue sequence counter
    p:q:waiting    ZSET   job id scored by waiting score
    p:q:delayed    ZSET   job id scored by ready-at epoch ms
    p:q:active     ZSET   job id scored by lease deadline epoch ms
    p:q:completed  LIST   newest first, trimmed to keep_completed
    p:q:failed     LIST   newest first, trimmed to keep_failed
    p:q:paused     STRING present while the queue is paused
    p:q:limiter    ZSET   dispatch markers scored by dispatch epoch ms

The attempts hash, not the job JSON, is authoritative for attempt counts, and
bucket membership is authoritative for whether a job is waiting, delayed or
active.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from redis.asyncio import Redis


class QueueLuaScripts:
    """Container for the queue store's Redis Lua scripts."""

    ENQUEUE: str = (
        # Store a job and place it in waiting or delayed.
        #
        # KEYS[1]: jobs hash
        # KEYS[2]: scores hash
        # KEYS[3]: waiting zset
        # KEYS[4]: delayed zset
        # KEYS[5]: attempts hash
        # KEYS[6]: max attempts hash
        # ARGV[1]: job id
        # ARGV[2]: job JSON
        # ARGV[3]: waiting score
        # ARGV[4]: ready-at epoch ms, or 0 for immediately visible
        # ARGV[5]: attempts already made
        # ARGV[6]: max attempts
        #
        # Returns: 1
        "local id = ARGV[1]\n"
        "redis.call('HSET', KEYS[1], id, ARGV[2])\n"
        "redis.call('HSET', KEYS[2], id, ARGV[3])\n"
        "redis.call('HSET', KEYS[5], id, ARGV[5])\n"
        "redis.call('HSET', KEYS[6], id, ARGV[6])\n"
        "local ready_at = tonumber(ARGV[4])\n"
        "if ready_at > 0 then\n"
        "  redis.call('ZADD', KEYS[4], ready_at, id)\n"
        "else\n"
        "  redis.call('ZADD', KEYS[3], tonumber(ARGV[3]), id)\n"
        "end\n"
        "return 1\n"
    )

    RESERVE: str = (
        # Reclaim expired leases, promote due delayed jobs, then hand out the
        # next waiting job if the queue is not paused, below concurrency and
        # within its rate window.
        #
        # KEYS[1]: waiting zset
        # KEYS[2]: delayed zset
        # KEYS[3]: active zset
        # KEYS[4]: paused flag
        # KEYS[5]: limiter zset
        # KEYS[6]: scores hash
        # KEYS[7]: jobs hash
        # KEYS[8]: attempts hash
        # KEYS[9]: max attempts hash
        # KEYS[10]: stalled hash
        # ARGV[1]: now (epoch ms)
        # ARGV[2]: concurrency
        # ARGV[3]: rate limit max (0 disables the limiter)
        # ARGV[4]: rate limit window (ms)
        # ARGV[5]: lease (ms)
        #
        # Returns {outcome, job id, job JSON, retry after ms, attempts, stalled
        # reason} where outcome is one of job, exhausted, paused, busy,
        # limited, empty. retry after is -1 when unknown. An exhausted job was
        # reclaimed with no attempts left; it is held so the caller can fail it.
        #
        # INVARIANT: a rate-limit slot is consumed only when a job is handed out.
        "local now = tonumber(ARGV[1])\n"
        "local lease = tonumber(ARGV[5])\n"
        "local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', now)\n"
        "for _, id in ipairs(expired) do\n"
        "  redis.call('ZREM', KEYS[3], id)\n"
        "  redis.call('HSETNX', KEYS[10], id, 'Job lease expired')\n"
        "  redis.call('ZADD', KEYS[2], now, id)\n"
        "end\n"
        "local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now)\n"
        "for _, id in ipairs(due) do\n"
        "  local score = redis.call('HGET', KEYS[6], id)\n"
        "  redis.call('ZREM', KEYS[2], id)\n"
        "  if score then\n"
        "    redis.call('ZADD', KEYS[1], tonumber(score), id)\n"
        "  end\n"
        "end\n"
        "if redis.call('EXISTS', KEYS[4]) == 1 then\n"
        "  return {'paused', '', '', '-1', '0', ''}\n"
        "end\n"
        "if redis.call('ZCARD', KEYS[3]) >= tonumber(ARGV[2]) then\n"
        "  return {'busy', '', '', '-1', '0', ''}\n"
        "end\n"
        "if redis.call('ZCARD', KEYS[1]) == 0 then\n"
        "  local nxt = redis.call('ZRANGE', KEYS[2], 0, 0, 'WITHSCORES')\n"
        "  if nxt[2] then\n"
        "    return {'empty', '', '', tostring(math.max(1, tonumber(nxt[2]) - now)), '0', ''}\n"
        "  end\n"
        "  return {'empty', '', '', '-1', '0', ''}\n"
        "end\n"
        "local id = redis.call('ZRANGE', KEYS[1], 0, 0)[1]\n"
        "local attempts = tonumber(redis.call('HGET', KEYS[8], id) or '0')\n"
        "local max_attempts = tonumber(redis.call('HGET', KEYS[9], id) or '1')\n"
        "local stalled = redis.call('HGET', KEYS[10], id) or ''\n"
        "local raw = redis.call('HGET', KEYS[7], id) or ''\n"
        "if attempts >= max_attempts then\n"
        "  redis.call('ZREM', KEYS[1], id)\n"
        "  redis.call('HDEL', KEYS[10], id)\n"
        "  redis.call('ZADD', KEYS[3], now + lease, id)\n"
        "  return {'exhausted', id, raw, '0', tostring(attempts), stalled}\n"
        "end\n"
        "local rate_max = tonumber(ARGV[3])\n"
        "local window = tonumber(ARGV[4])\n"
        "if rate_max > 0 then\n"
        "  redis.call('ZREMRANGEBYSCORE', KEYS[5], '-inf', now - window)\n"
        "  local used = redis.call('ZCARD', KEYS[5])\n"
        "  if used >= rate_max then\n"
        "    local oldest = redis.call('ZRANGE', KEYS[5], used - rate_max, used - rate_max, 'WITHSCORES')\n"
        "    local wait = tonumber(oldest[2]) + window - now\n"
        "    return {'limited', '', '', tostring(math.max(1, wait)), '0', ''}\n"
        "  end\n"
        "end\n"
        "redis.call('ZREM', KEYS[1], id)\n"
        "redis.call('HDEL', KEYS[10], id)\n"
        "attempts = redis.call('HINCRBY', KEYS[8], id, 1)\n"
        "redis.call('ZADD', KEYS[3], now + lease, id)\n"
        "if rate_max > 0 then\n"
        "  redis.call('ZADD', KEYS[5], now, id .. ':' .. now)\n"
        "  redis.call('PEXPIRE', KEYS[5], window)\n"
        "end\n"
        "return {'job', id, raw, '0', tostring(attempts), stalled}\n"
    )

    FINISH: str = (
        # Move a held job into a bounded terminal bucket.
        #
        # KEYS[1]: jobs hash
        # KEYS[2]: scores hash
        # KEYS[3]: active zset
        # KEYS[4]: completed or failed list
        # KEYS[5]: attempts hash
        # KEYS[6]: max attempts hash
        # KEYS[7]: stalled hash
        # ARGV[1]: job id
        # ARGV[2]: updated job JSON
        # ARGV[3]: retention count
        #
        # Returns: number of evicted jobs, or -1 when the job is not held
        #
        # INVARIANT: only the holder of a job's lease records its outcome; a
        # job reclaimed after its lease expired is left to its new holder.
        # Evicted jobs are removed from every hash, so status lookups for them
        # return nothing.
        "local id = ARGV[1]\n"
        "if redis.call('ZREM', KEYS[3], id) == 0 then\n"
        "  return -1\n"
        "end\n"
        "redis.call('HSET', KEYS[1], id, ARGV[2])\n"
        "redis.call('HDEL', KEYS[2], id)\n"
        "redis.call('HDEL', KEYS[7], id)\n"
        "redis.call('LPUSH', KEYS[4], id)\n"
        "local keep = tonumber(ARGV[3])\n"
        "local evicted = 0\n"
        "while redis.call('LLEN', KEYS[4]) > keep do\n"
        "  local old = redis.call('RPOP', KEYS[4])\n"
        "  redis.call('HDEL', KEYS[1], old)\n"
        "  redis.call('HDEL', KEYS[5], old)\n"
        "  redis.call('HDEL', KEYS[6], old)\n"
        "  evicted = evicted + 1\n"
        "end\n"
        "return evicted\n"
    )

    RETRY: str = (
        # Move a held job back to delayed for another attempt.
        #
        # KEYS[1]: jobs hash
        # KEYS[2]: active zset
        # KEYS[3]: delayed zset
        # ARGV[1]: job id
        # ARGV[2]: updated job JSON
        # ARGV[3]: ready-at epoch ms
        #
        # Returns: 1, or 0 when the job is not held
        "local id = ARGV[1]\n"
        "if redis.call('ZREM', KEYS[2], id) == 0 then\n"
        "  return 0\n"
        "end\n"
        "redis.call('HSET', KEYS[1], id, ARGV[2])\n"
        "redis.call('ZADD', KEYS[3], tonumber(ARGV[3]), id)\n"
        "return 1\n"
    )

    RELEASE: str = (
        # Expire the lease on a held job so the next reservation reclaims it.
        #
        # KEYS[1]: active zset
        # KEYS[2]: stalled hash
        # ARGV[1]: job id
        # ARGV[2]: reason
        #
        # Returns: 1, or 0 when the job is not held
        "local id = ARGV[1]\n"
        "if not redis.call('ZSCORE', KEYS[1], id) then\n"
        "  return 0\n"
        "end\n"
        "redis.call('ZADD', KEYS[1], 0, id)\n"
        "redis.call('HSET', KEYS[2], id, ARGV[2])\n"
        "return 1\n"
    )

    @staticmethod
    async def _run(redis: "Redis", script: str, keys: list[str], args: list[Any]) -> Any:
        # NOTE: This is Redis EVAL for Lua scripts, NOT Python's eval()
        return await redis.eval(script, len(keys), *keys, *args)

    @staticmethod
    async def enqueue(
        redis: "Redis",
        keys: list[str],
        job_id: str,
        job_json: str,
        score: int,
        ready_at_ms: int,
        attempts: int,
        max_attempts: int,
    ) -> Any:
        return await QueueLuaScripts._run(
            redis,
            QueueLuaScripts.ENQUEUE,
            keys,
            [job_id, job_json, score, ready_at_ms, attempts, max_attempts],
        )

    @staticmethod
    async def reserve(
        redis: "Redis",
        keys: list[str],
        now_ms: int,
        concurrency: int,
        rate_max: int,
        rate_window_ms: int,
        lease_ms: int,
    ) -> Any:
        return await QueueLuaScripts._run(
            redis,
            QueueLuaScripts.RESERVE,
            keys,
            [now_ms, concurrency, rate_max, rate_window_ms, lease_ms],
        )

    @staticmethod
    async def finish(
        redis: "Redis", keys: list[str], job_id: str, job_json: str, keep: int
    ) -> Any:
        return await QueueLuaScripts._run(
            redis, QueueLuaScripts.FINISH, keys, [job_id, job_json, keep]
        )

    @staticmethod
    async def retry(
        redis: "Redis", keys: list[str], job_id: str, job_json: str, ready_at_ms: int
    ) -> Any:
        return await QueueLuaScripts._run(
            redis, QueueLuaScripts.RETRY, keys, [job_id, job_json, ready_at_ms]
        )

    @staticmethod
    async def release(redis: "Redis", keys: list[str], job_id: str, reason: str) -> Any:
        return await QueueLuaScripts._run(
            redis, QueueLuaScripts.RELEASE, keys, [job_id, reason]
        )
