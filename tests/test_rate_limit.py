import random
import threading

import pytest

from kb_agent.config import GLOBAL_LIMIT, MINUTE_MS, TEST_LIMIT, THREAD_LIMIT, LimitConfig
from kb_agent.errors import AdmissionRejected, InputValidationError, UnknownLimitError
from kb_agent.rate_limit import RateLimiter, bucket_key, retry_after_seconds


class Clock:
    def __init__(self, now=1_700_000_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def limiter(redis_client, limits, clock):
    return RateLimiter(redis_client, limits, clock=clock, rng=random.Random(0))


def test_consume_until_empty_then_reject(limiter):
    assert limiter.consume(TEST_LIMIT).ok
    assert limiter.consume(TEST_LIMIT).ok
    rejected = limiter.consume(TEST_LIMIT)
    assert not rejected.ok
    # 3 tokens/minute -> one token every 20s
    assert 19_999 <= rejected.retry_after_ms <= 20_001


def test_lazy_refill(limiter, clock):
    limiter.consume(TEST_LIMIT, count=2)
    assert not limiter.consume(TEST_LIMIT).ok
    clock.now += 20_001
    assert limiter.consume(TEST_LIMIT).ok
    assert not limiter.consume(TEST_LIMIT).ok


def test_refill_caps_at_capacity(limiter, clock):
    limiter.consume(TEST_LIMIT)
    clock.now += 60 * MINUTE_MS
    assert limiter.get_value(TEST_LIMIT).value == pytest.approx(2)
    assert limiter.consume(TEST_LIMIT, count=2).ok
    assert not limiter.consume(TEST_LIMIT).ok


def test_value_never_increases_without_time_passing(limiter):
    values = []
    for _ in range(3):
        limiter.consume(TEST_LIMIT)
        values.append(limiter.get_value(TEST_LIMIT).value)
    assert values == sorted(values, reverse=True)
    assert values[-1] >= 0


def test_check_does_not_consume(limiter):
    for _ in range(5):
        assert limiter.check(TEST_LIMIT, count=2).ok
    assert limiter.consume(TEST_LIMIT, count=2).ok
    assert not limiter.check(TEST_LIMIT).ok


def test_get_value_reports_bucket_state(limiter, redis_client, clock):
    fresh = limiter.get_value(TEST_LIMIT, "k")
    assert fresh.value == pytest.approx(2)

    limiter.consume(TEST_LIMIT, "k")
    stored = redis_client.hgetall(bucket_key(TEST_LIMIT, "k", 0))
    assert stored["name"] == TEST_LIMIT
    assert stored["key"] == "k"
    assert stored["shard"] == "0"
    assert float(stored["token_value"]) == pytest.approx(1)
    assert float(stored["last_refill_ts"]) == pytest.approx(clock.now)

    value = limiter.get_value(TEST_LIMIT, "k")
    assert value.value == pytest.approx(1)
    assert value.timestamp == pytest.approx(clock.now)


def test_keys_are_independent(limiter):
    assert limiter.consume(TEST_LIMIT, "a", count=2).ok
    assert not limiter.consume(TEST_LIMIT, "a").ok
    assert limiter.consume(TEST_LIMIT, "b").ok


def test_reset_refills(limiter):
    limiter.consume(TEST_LIMIT, count=2)
    limiter.reset(TEST_LIMIT)
    assert limiter.get_value(TEST_LIMIT).value == pytest.approx(2)
    assert limiter.consume(TEST_LIMIT, count=2).ok


def test_invalid_counts_and_names(limiter):
    with pytest.raises(InputValidationError):
        limiter.consume(TEST_LIMIT, count=0)
    with pytest.raises(InputValidationError):
        limiter.consume(TEST_LIMIT, count=3)
    # global: capacity 100 over 10 shards -> 10 per shard
    with pytest.raises(InputValidationError):
        limiter.consume(GLOBAL_LIMIT, count=11)
    with pytest.raises(UnknownLimitError):
        limiter.consume("nope")


def test_sharded_limit_spreads_over_buckets(limiter, redis_client):
    for _ in range(20):
        assert limiter.consume(GLOBAL_LIMIT).ok
    shards = [k for k in redis_client.keys(f"ratelimit:{GLOBAL_LIMIT}:global:*")]
    assert len(shards) > 1
    total_left = sum(float(redis_client.hget(k, "token_value")) for k in shards)
    untouched = 10 - len(shards)
    assert total_left + untouched * 10 == pytest.approx(80, abs=0.1)


def test_zero_rate_never_refills(redis_client, clock):
    limiter = RateLimiter(redis_client, {"fixed": LimitConfig(rate=0, period_ms=MINUTE_MS, capacity=1)}, clock=clock)
    assert limiter.consume("fixed").ok
    result = limiter.consume("fixed")
    assert not result.ok
    assert result.retry_after_ms is None


@pytest.fixture
def tight_limiter(redis_client, clock):
    limits = {
        GLOBAL_LIMIT: LimitConfig(rate=1, period_ms=MINUTE_MS, capacity=2),
        THREAD_LIMIT: LimitConfig(rate=1, period_ms=MINUTE_MS, capacity=1),
    }
    return RateLimiter(redis_client, limits, clock=clock)


def test_admit_conversation_scope(tight_limiter):
    tight_limiter.admit("t1")
    with pytest.raises(AdmissionRejected) as exc:
        tight_limiter.admit("t1")
    assert exc.value.scope == "conversation"
    assert exc.value.retry_after_ms > 0


def test_global_rejection_does_not_spend_conversation_tokens(tight_limiter, redis_client):
    tight_limiter.admit()
    tight_limiter.admit()
    with pytest.raises(AdmissionRejected) as exc:
        tight_limiter.admit("t1")
    assert exc.value.scope == "global"
    assert not redis_client.exists(bucket_key(THREAD_LIMIT, "t1", 0))
    assert tight_limiter.get_value(THREAD_LIMIT, "t1").value == pytest.approx(1)


def test_admit_without_conversation_only_checks_global(tight_limiter, redis_client):
    tight_limiter.admit(None)
    assert redis_client.keys(f"ratelimit:{THREAD_LIMIT}:*") == []


def test_retry_after_seconds():
    assert retry_after_seconds(None) == 1
    assert retry_after_seconds(1) == 1
    assert retry_after_seconds(20_000) == 20
    assert retry_after_seconds(20_001) == 21


def test_concurrent_consumers_never_overspend(limiter):
    granted = []
    lock = threading.Lock()

    def worker():
        for _ in range(10):
            if limiter.consume(THREAD_LIMIT, "t").ok:
                with lock:
                    granted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # thread_search capacity is 10 and the frozen clock allows no refill
    assert len(granted) == 10
    assert limiter.get_value(THREAD_LIMIT, "t").value == pytest.approx(0)
    assert limiter.get_value(THREAD_LIMIT, "t").value >= 0


def test_get_value_sums_shards(limiter):
    assert limiter.get_value(GLOBAL_LIMIT).value == pytest.approx(100)
    for _ in range(7):
        limiter.consume(GLOBAL_LIMIT)
    assert limiter.get_value(GLOBAL_LIMIT).value == pytest.approx(93)
    per_shard = [limiter.get_value(GLOBAL_LIMIT, shard=s).value for s in range(10)]
    assert all(0 <= v <= 10 for v in per_shard)
    assert sum(per_shard) == pytest.approx(93)
    with pytest.raises(InputValidationError):
        limiter.get_value(GLOBAL_LIMIT, shard=10)
