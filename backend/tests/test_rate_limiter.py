import threading

import pytest

from services.rate_limiter import FixedWindowRateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_allows_up_to_limit_then_blocks():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(3, window_seconds=60, clock=clock)

    decisions = [limiter.hit('ip:1.2.3.4') for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
    assert decisions[3].retry_after == pytest.approx(60.0)


def test_window_resets_after_expiry():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(1, window_seconds=60, clock=clock)

    assert limiter.hit('k').allowed
    clock.now += 30
    blocked = limiter.hit('k')
    assert not blocked.allowed
    assert blocked.retry_after == pytest.approx(30.0)

    clock.now += 30
    assert limiter.hit('k').allowed


def test_keys_are_independent():
    limiter = FixedWindowRateLimiter(1, clock=FakeClock())

    assert limiter.hit('user:a').allowed
    assert limiter.hit('user:b').allowed
    assert not limiter.hit('user:a').allowed


def test_injected_storage_is_used_and_reset_clears_it():
    storage = {}
    limiter = FixedWindowRateLimiter(2, clock=FakeClock(), storage=storage)

    limiter.hit('k')
    assert storage['k'][0] == 1

    limiter.reset('k')
    assert 'k' not in storage


def test_concurrent_hits_never_exceed_limit():
    limiter = FixedWindowRateLimiter(50, clock=FakeClock())
    allowed = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            decision = limiter.hit('shared')
            with lock:
                allowed.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(allowed) == 50
    assert len(allowed) == 200


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(0)


def test_expired_keys_are_swept():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(3, window_seconds=60, clock=clock)
    for i in range(1000):
        limiter.hit(f'ip:10.0.{i // 256}.{i % 256}')
    assert len(limiter.storage) == 1000

    clock.now += 10_000
    limiter.hit('ip:1.2.3.4')

    assert list(limiter.storage) == ['ip:1.2.3.4']


def test_sweep_keeps_live_windows():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(1, window_seconds=60, clock=clock)
    limiter.hit('old')
    clock.now += 50
    limiter.hit('recent')

    clock.now += 20    # 'old' expired, 'recent' still has 40s left
    limiter.hit('new')

    assert set(limiter.storage) == {'recent', 'new'}
    assert not limiter.hit('recent').allowed
