import threading
import time

from app.services.mpesa_token import AccessTokenCache


class FakeClock:

    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def test_token_reused_until_margin():
    clock = FakeClock()
    calls = []

    def fetch():
        calls.append(1)
        return f"tok-{len(calls)}", 3600

    cache = AccessTokenCache(fetch, safety_margin=300, clock=clock)
    assert cache.get_token() == "tok-1"

    clock.t += 3299
    assert cache.get_token() == "tok-1"

    # inside the safety margin -> refresh
    clock.t += 1
    assert cache.get_token() == "tok-2"
    assert len(calls) == 2


def test_invalidate_forces_refresh():
    n = {"i": 0}

    def fetch():
        n["i"] += 1
        return f"tok-{n['i']}", 3600

    cache = AccessTokenCache(fetch, safety_margin=300, clock=FakeClock())
    assert cache.get_token() == "tok-1"
    cache.invalidate()
    assert cache.get_token() == "tok-2"


def test_single_flight_under_concurrency():
    calls = []
    lock = threading.Lock()

    def slow_fetch():
        with lock:
            calls.append(1)
        time.sleep(0.05)
        return "shared-token", 3600

    cache = AccessTokenCache(slow_fetch, safety_margin=300)
    results = []
    start = threading.Barrier(10)

    def worker():
        start.wait()
        results.append(cache.get_token())

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert len(calls) == 1
    assert results == ["shared-token"] * 10
