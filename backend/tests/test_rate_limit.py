from starlette.requests import Request

from myhometech.utils.rate_limit import SlidingWindowRateLimiter, get_client_ip


def _request(peer: str, headers: dict | None = None) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw, "client": (peer, 5000)})


def _freeze(monkeypatch, start: float) -> dict:
    clock = {"now": start}
    monkeypatch.setattr("myhometech.utils.rate_limit.time.monotonic", lambda: clock["now"])
    return clock


def test_limit_within_window(monkeypatch):
    clock = _freeze(monkeypatch, 1000.0)
    rl = SlidingWindowRateLimiter(window_seconds=60)

    assert rl.hit("k", limit=2) is True
    assert rl.hit("k", limit=2) is True
    assert rl.hit("k", limit=2) is False

    clock["now"] += 61
    assert rl.hit("k", limit=2) is True


def test_keys_are_counted_separately(monkeypatch):
    _freeze(monkeypatch, 1000.0)
    rl = SlidingWindowRateLimiter(window_seconds=60)

    assert rl.hit("a", limit=1) is True
    assert rl.hit("a", limit=1) is False
    assert rl.hit("b", limit=1) is True


def test_idle_keys_are_swept(monkeypatch):
    clock = _freeze(monkeypatch, 1000.0)
    rl = SlidingWindowRateLimiter(window_seconds=60, sweep_every=1)

    for i in range(200):
        assert rl.hit(f"k:{i}", limit=1) is True
    assert rl.tracked_keys() == 200

    clock["now"] += 120
    assert rl.hit("k:new", limit=1) is True
    assert rl.tracked_keys() == 1


def test_disabled_limit_always_allows():
    rl = SlidingWindowRateLimiter()
    assert rl.hit("k", limit=0) is True
    assert rl.tracked_keys() == 0


def test_forwarded_header_ignored_from_untrusted_peer():
    req = _request("203.0.113.5", {"X-Forwarded-For": "1.2.3.4"})
    assert get_client_ip(req, trusted_proxy_cidrs=["10.0.0.0/8"]) == "203.0.113.5"


def test_forwarded_header_used_from_trusted_proxy():
    req = _request("10.1.2.3", {"X-Forwarded-For": "198.51.100.1, 1.2.3.4"})
    assert get_client_ip(req, trusted_proxy_cidrs=["10.0.0.0/8"]) == "1.2.3.4"

    req = _request("10.1.2.3", {"X-Real-IP": "1.2.3.9"})
    assert get_client_ip(req, trusted_proxy_cidrs=["10.0.0.0/8"]) == "1.2.3.9"

    req = _request("10.1.2.3")
    assert get_client_ip(req, trusted_proxy_cidrs=["10.0.0.0/8", "not-a-cidr"]) == "10.1.2.3"
