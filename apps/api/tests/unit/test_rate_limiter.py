import threading

import pytest

from app import config as config_module
from app.integrations.redis_client import RedisProtocolError
from app.services import rate_limiter
from app.services.rate_limiter import InMemoryRateLimiter, RedisRateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedisPipelineClient:
    def __init__(self) -> None:
        self.counters: dict[str, int] = {}
        self.expirations: dict[str, int] = {}
        self.commands: list[tuple[str, ...]] = []

    def pipeline(self, commands):
        results = []
        for command in commands:
            self.commands.append(command)
            name, key = command[0], command[1]
            if name == "INCR":
                self.counters[key] = self.counters.get(key, 0) + 1
                results.append(self.counters[key])
            elif name == "EXPIRE":
                self.expirations[key] = int(command[2])
                results.append(1)
        return results


def test_in_memory_limiter_blocks_after_max_requests():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)

    results = [limiter.check("refund:a", max_requests=2, window_s=60) for _ in range(3)]

    assert [result.allowed for result in results] == [True, True, False]
    assert [result.remaining for result in results] == [1, 0, 0]
    assert results[2].reset_after_s == 60
    assert results[2].reset_at_s == 1_060


def test_in_memory_limiter_window_slides():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.check("k", max_requests=1, window_s=10)

    clock.now += 5
    assert limiter.check("k", max_requests=1, window_s=10).allowed is False

    clock.now += 6
    assert limiter.check("k", max_requests=1, window_s=10).allowed is True


def test_keys_are_independent():
    limiter = InMemoryRateLimiter(clock=FakeClock())
    limiter.check("refund:a", max_requests=1, window_s=60)

    assert limiter.check("refund:b", max_requests=1, window_s=60).allowed is True


def test_sweep_drops_only_expired_buckets():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock, sweep_interval_s=10_000)
    limiter.check("old", max_requests=5, window_s=60)
    clock.now += 50
    limiter.check("fresh", max_requests=5, window_s=60)
    clock.now += 20

    assert limiter.sweep() == 1
    assert limiter.bucket_count() == 1
    assert limiter.check("fresh", max_requests=5, window_s=60).remaining == 3


def test_check_sweeps_idle_buckets_periodically():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock, sweep_interval_s=120)
    for index in range(50):
        limiter.check(f"refund:actor-{index}", max_requests=5, window_s=60)
    assert limiter.bucket_count() == 50

    clock.now += 121
    limiter.check("refund:new", max_requests=5, window_s=60)

    assert limiter.bucket_count() == 1


def test_reset_clears_buckets():
    limiter = InMemoryRateLimiter(clock=FakeClock())
    limiter.check("k", max_requests=1, window_s=60)
    limiter.reset()

    assert limiter.bucket_count() == 0
    assert limiter.check("k", max_requests=1, window_s=60).allowed is True


def test_bucket_count_waits_for_in_flight_update():
    limiter = InMemoryRateLimiter(clock=FakeClock())
    limiter.check("k", max_requests=5, window_s=60)
    counts: list[int] = []

    with limiter._lock:
        reader = threading.Thread(target=lambda: counts.append(limiter.bucket_count()))
        reader.start()
        reader.join(timeout=0.1)
        assert reader.is_alive()
        limiter._buckets["other"] = [1_000.0]

    reader.join(timeout=1)
    assert counts == [2]


def test_redis_limiter_counts_per_fixed_window():
    client = FakeRedisPipelineClient()
    clock = FakeClock(now=1_005.0)
    limiter = RedisRateLimiter(client, clock=clock)

    first = limiter.check("export:admin", max_requests=2, window_s=60)
    second = limiter.check("export:admin", max_requests=2, window_s=60)
    third = limiter.check("export:admin", max_requests=2, window_s=60)

    assert [first.allowed, second.allowed, third.allowed] == [True, True, False]
    assert third.remaining == 0
    assert third.reset_at_s == 1_020
    assert client.commands[0] == ("INCR", "ratelimit:export:admin:960")
    assert client.expirations == {"ratelimit:export:admin:960": 60}
    assert limiter.sweep() == 0


def test_redis_limiter_rejects_unexpected_response():
    class BadClient:
        def pipeline(self, commands):
            return ["OK", 1]

    limiter = RedisRateLimiter(BadClient(), clock=FakeClock())

    with pytest.raises(RedisProtocolError):
        limiter.check("k", max_requests=1, window_s=60)


def test_build_rate_limiter_requires_redis_url_for_redis_backend(monkeypatch):
    monkeypatch.setattr(config_module.settings, "rate_limit_backend", "redis")
    monkeypatch.setattr(config_module.settings, "redis_url", "")

    with pytest.raises(RuntimeError, match="REDIS_URL"):
        rate_limiter.build_rate_limiter()


def test_build_rate_limiter_defaults_to_memory(monkeypatch):
    monkeypatch.setattr(config_module.settings, "rate_limit_backend", "memory")

    assert isinstance(rate_limiter.build_rate_limiter(), InMemoryRateLimiter)


def test_build_rate_limiter_uses_redis_when_configured(monkeypatch):
    monkeypatch.setattr(config_module.settings, "rate_limit_backend", "redis")
    monkeypatch.setattr(config_module.settings, "redis_url", "redis://localhost:6379/0")

    assert isinstance(rate_limiter.build_rate_limiter(), RedisRateLimiter)
