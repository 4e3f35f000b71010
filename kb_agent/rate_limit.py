"""Redis-backed token-bucket rate limiting with named limits and sharded buckets.

Usage:
    limiter = RateLimiter(redis_client, settings.rate_limits())
    limiter.admit(conversation_id)          # raises AdmissionRejected
    limiter.consume("test_limit", count=1)  # -> LimitResult(ok=..., retry_after_ms=...)

Each (limit name, key, shard) owns one Redis hash at `ratelimit:{name}:{key}:{shard}`
holding the persisted record:
    name, key, shard, token_value, last_refill_ts (epoch ms)

Refill is lazy: value = min(capacity, value + elapsed_ms * rate_per_ms), computed
inside a Lua script together with the consume, so concurrent consumers of the same
bucket are serialized by Redis and can never overdraw it. Nothing refills buckets in
the background.

Sharded limits split capacity and rate evenly over `shards` buckets; a consume hits one
randomly chosen shard, so the global capacity is the sum of the shards.

Limits enforced by the agent (defaults from kb_agent.config.Settings):
- global_search: 1000/hour, burst 100, 10 shards, key "global"
- thread_search: 60/hour, burst 10, keyed by conversation id
- test_limit:    3/minute, burst 2 (manual testing only)
"""
from __future__ import annotations

import logging
import math
import random
import time
from typing import Callable, Dict, Optional, Tuple

import redis

from kb_agent.config import GLOBAL_LIMIT, THREAD_LIMIT, LimitConfig
from kb_agent.errors import AdmissionRejected, InputValidationError, UnknownLimitError
from kb_agent.schemas import LimitResult, LimitValue

logger = logging.getLogger(__name__)

GLOBAL_KEY = "global"


# Lua script: token-bucket with lazy refill and optional consume
# KEYS[1] = bucket hash key
# ARGV[1] = capacity
# ARGV[2] = refill rate (tokens per millisecond, can be fractional)
# ARGV[3] = now (epoch milliseconds)
# ARGV[4] = count to take
# ARGV[5] = 1 to consume, 0 to only check
# ARGV[6..8] = name, key, shard (stored alongside the counter)
# Returns {allowed, retry_after_ms, value}; numbers go back as strings so Redis does
# not truncate fractional values.
TOKEN_BUCKET_LUA = r"""
local bucket = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local count = tonumber(ARGV[4])
local consume = tonumber(ARGV[5])

local value = tonumber(redis.call('HGET', bucket, 'token_value'))
local last_ts = tonumber(redis.call('HGET', bucket, 'last_refill_ts'))

if value == nil then
    value = capacity
end
if last_ts == nil then
    last_ts = now
end

local elapsed = now - last_ts
if elapsed < 0 then
    elapsed = 0
end

value = value + (elapsed * rate)
if value > capacity then
    value = capacity
end

local allowed = 0
local retry_after = 0

if value >= count then
    allowed = 1
    if consume == 1 then
        value = value - count
        redis.call('HSET', bucket,
            'name', ARGV[6], 'key', ARGV[7], 'shard', ARGV[8],
            'token_value', tostring(value), 'last_refill_ts', ARGV[3])
    end
else
    local needed = count - value
    if rate > 0 then
        retry_after = math.ceil(needed / rate)
    else
        retry_after = -1
    end
end

return {allowed, tostring(retry_after), tostring(value)}
"""

# Lua script: set a bucket back to full capacity
# KEYS[1] = bucket hash key
# ARGV[1] = capacity, ARGV[2] = now (ms), ARGV[3..5] = name, key, shard
RESET_BUCKET_LUA = r"""
redis.call('HSET', KEYS[1],
    'name', ARGV[3], 'key', ARGV[4], 'shard', ARGV[5],
    'token_value', ARGV[1], 'last_refill_ts', ARGV[2])
return 1
"""


def _now_ms() -> float:
    return time.time() * 1000.0


def bucket_key(name: str, key: str, shard: int) -> str:
    return f"ratelimit:{name}:{key}:{shard}"


class RateLimiter:
    """Token-bucket admission control over a set of named limits."""

    def __init__(
        self,
        r: redis.Redis,
        limits: Dict[str, LimitConfig],
        clock: Callable[[], float] = _now_ms,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            r: Redis client (decode_responses=True).
            limits: Limit definitions by name.
            clock: Current time in epoch milliseconds.
            rng: Source for shard selection.
        """
        self.redis = r
        self.limits = dict(limits)
        self.clock = clock
        self.rng = rng or random.Random()
        self._bucket = r.register_script(TOKEN_BUCKET_LUA)
        self._reset = r.register_script(RESET_BUCKET_LUA)

    def _config(self, name: str) -> LimitConfig:
        try:
            return self.limits[name]
        except KeyError:
            raise UnknownLimitError(name) from None

    def _pick_shard(self, config: LimitConfig) -> int:
        return self.rng.randrange(config.shards) if config.shards > 1 else 0

    def _run(self, name: str, key: Optional[str], count: int, consume: bool) -> Tuple[bool, int, float]:
        config = self._config(name)
        if count < 1:
            raise InputValidationError("count must be at least 1")
        if count > config.shard_capacity:
            raise InputValidationError(
                f"count {count} exceeds the per-bucket capacity {config.shard_capacity:g} of {name}"
            )
        k = key or GLOBAL_KEY
        shard = self._pick_shard(config)
        res = self._bucket(
            keys=[bucket_key(name, k, shard)],
            args=[
                repr(config.shard_capacity),
                repr(config.shard_rate_per_ms),
                repr(self.clock()),
                str(count),
                "1" if consume else "0",
                name,
                k,
                str(shard),
            ],
        )
        allowed = int(res[0]) == 1
        retry_after = int(float(res[1]))
        return allowed, retry_after, float(res[2])

    @staticmethod
    def _result(allowed: bool, retry_after: int) -> LimitResult:
        if allowed:
            return LimitResult(ok=True)
        # -1 means the bucket never refills
        return LimitResult(ok=False, retry_after_ms=retry_after if retry_after >= 0 else None)

    def check(self, name: str, key: Optional[str] = None, count: int = 1) -> LimitResult:
        """Report whether `count` tokens are available, without taking them."""
        allowed, retry_after, _ = self._run(name, key, count, consume=False)
        return self._result(allowed, retry_after)

    def consume(self, name: str, key: Optional[str] = None, count: int = 1) -> LimitResult:
        """Take `count` tokens if available.

        Returns:
            LimitResult: ok=True when taken; otherwise ok=False with the milliseconds
            needed to refill the shortfall.
        """
        allowed, retry_after, _ = self._run(name, key, count, consume=True)
        return self._result(allowed, retry_after)

    def _shard_value(self, config: LimitConfig, name: str, key: str, shard: int, now: float) -> LimitValue:
        stored = self.redis.hmget(bucket_key(name, key, shard), "token_value", "last_refill_ts")
        if stored[0] is None or stored[1] is None:
            return LimitValue(value=config.shard_capacity, timestamp=now)
        value, last_ts = float(stored[0]), float(stored[1])
        elapsed = max(0.0, now - last_ts)
        return LimitValue(value=min(config.shard_capacity, value + elapsed * config.shard_rate_per_ms), timestamp=last_ts)

    def get_value(self, name: str, key: Optional[str] = None, shard: Optional[int] = None) -> LimitValue:
        """Current (refilled) token value and last refill time, without consuming.

        With `shard` set, reports that one bucket. Otherwise the values of all shards
        are summed and the timestamp is the most recent refill among them.

        Raises:
            InputValidationError: shard is outside [0, shards).
        """
        config = self._config(name)
        k = key or GLOBAL_KEY
        now = self.clock()
        if shard is not None:
            if not 0 <= shard < config.shards:
                raise InputValidationError(f"shard must be in [0, {config.shards}) for {name}")
            return self._shard_value(config, name, k, shard, now)
        values = [self._shard_value(config, name, k, s, now) for s in range(config.shards)]
        return LimitValue(value=sum(v.value for v in values), timestamp=max(v.timestamp for v in values))

    def reset(self, name: str, key: Optional[str] = None) -> None:
        """Refill every shard of a bucket to capacity (administrative use)."""
        config = self._config(name)
        k = key or GLOBAL_KEY
        now = repr(self.clock())
        for shard in range(config.shards):
            self._reset(
                keys=[bucket_key(name, k, shard)],
                args=[repr(config.shard_capacity), now, name, k, str(shard)],
            )
        logger.info("Reset rate limit %s (key=%s)", name, k)

    def admit(self, conversation_id: Optional[str] = None) -> None:
        """Gate one search/agent request.

        The global limit is consumed first; the per-conversation limit is consulted
        only after the global one passes, so a globally rejected request never spends
        conversation tokens. Without a conversation id only the global limit applies.

        Raises:
            AdmissionRejected: With the scope that refused and the retry delay.
        """
        result = self.consume(GLOBAL_LIMIT)
        if not result.ok:
            logger.info("Global rate limit exceeded, retry after %sms", result.retry_after_ms)
            raise AdmissionRejected("global", result.retry_after_ms)
        if conversation_id is None:
            return
        result = self.consume(THREAD_LIMIT, conversation_id)
        if not result.ok:
            logger.info(
                "Conversation rate limit exceeded for %s, retry after %sms", conversation_id, result.retry_after_ms
            )
            raise AdmissionRejected("conversation", result.retry_after_ms)


def retry_after_seconds(retry_after_ms: Optional[int]) -> int:
    """Whole seconds for a Retry-After header."""
    if not retry_after_ms:
        return 1
    return max(1, math.ceil(retry_after_ms / 1000))
