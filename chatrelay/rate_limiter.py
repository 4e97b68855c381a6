from __future__ import annotations

import time
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import NoScriptError


@dataclass
class RateLimitOutcome:
    allowed: bool
    usage: int
    limit: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.usage)


_LUA_SCRIPT = """
local req_zset = KEYS[1]
local req_hash = KEYS[2]
local req_total = KEYS[3]

local window_seconds = tonumber(ARGV[1])
local now_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local bucket = math.floor(now_ms / 1000)
local oldest_bucket = bucket - window_seconds + 1

local function ensure_total(key)
    local current = redis.call('GET', key)
    if not current then
        redis.call('SET', key, '0')
        return 0
    end
    return tonumber(current)
end

local expired = redis.call('ZRANGEBYSCORE', req_zset, 0, oldest_bucket - 1)
if #expired > 0 then
    for _, bucket_id in ipairs(expired) do
        local amount = redis.call('HGET', req_hash, bucket_id)
        if amount then
            redis.call('HDEL', req_hash, bucket_id)
            redis.call('INCRBY', req_total, -tonumber(amount))
        end
    end
    redis.call('ZREMRANGEBYSCORE', req_zset, 0, oldest_bucket - 1)
end
local current = ensure_total(req_total)

local allowed = 0
if limit <= 0 or current + 1 <= limit then
    allowed = 1
    redis.call('ZADD', req_zset, bucket, bucket)
    redis.call('HINCRBY', req_hash, bucket, 1)
    redis.call('INCRBY', req_total, 1)
    current = current + 1
end
redis.call('EXPIRE', req_zset, ttl); redis.call('EXPIRE', req_hash, ttl); redis.call('EXPIRE', req_total, ttl)

local oldest = redis.call('ZRANGE', req_zset, 0, 0)
local retry_after = window_seconds
if #oldest > 0 then
    retry_after = tonumber(oldest[1]) + window_seconds - bucket
end

return {allowed, current, retry_after}
"""


class RateLimiter:
    """Sliding-window request counter per client, shared across relay nodes via Redis."""

    def __init__(self, redis_url: str, max_requests: int = 100, window_seconds: int = 900) -> None:
        self._redis = Redis.from_url(redis_url, decode_responses=True)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._script_sha: str | None = None
        self._ttl_seconds = window_seconds + 5

    @property
    def description(self) -> str:
        return f"{self._max_requests} requests per {self._window_seconds} seconds"

    async def initialize(self) -> None:
        self._script_sha = await self._redis.script_load(_LUA_SCRIPT)

    async def close(self) -> None:
        await self._redis.aclose()

    async def _eval_script(self, *args, keys):
        if not self._script_sha:
            await self.initialize()
        try:
            return await self._redis.evalsha(self._script_sha, len(keys), *keys, *args)
        except NoScriptError:
            await self.initialize()
            return await self._redis.evalsha(self._script_sha, len(keys), *keys, *args)

    async def check_and_consume(self, client_id: str) -> RateLimitOutcome:
        now_ms = int(time.time() * 1000)
        prefix = f"rl:{client_id}"
        keys = [f"{prefix}:req:z", f"{prefix}:req:h", f"{prefix}:req:total"]
        args = [self._window_seconds, now_ms, self._max_requests, self._ttl_seconds]
        allowed, usage, retry_after = await self._eval_script(*args, keys=keys)
        return RateLimitOutcome(
            allowed=bool(allowed),
            usage=int(usage),
            limit=self._max_requests,
            retry_after=max(1, int(retry_after)),
        )
