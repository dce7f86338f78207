import pytest
from fastapi import Request

from api.security import FixedWindowRateLimiter, client_identifier, sanitize, sanitize_string


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSanitize:
    @pytest.mark.parametrize(
        "raw, clean",
        [
            ("<script>alert('x')</script>Hello", "Hello"),
            ("<SCRIPT type='text/javascript'>x()</SCRIPT> Hi ", "Hi"),
            ("click javascript:steal()", "click steal()"),
            ('<img onerror = "x">', '<img  "x">'),
            ("  plain text  ", "plain text"),
        ],
    )
    def test_sanitize_string(self, raw, clean):
        assert sanitize_string(raw) == clean

    def test_sanitize_recurses_into_containers(self):
        payload = {"a": [" x ", {"b": "<script>1</script>y"}], "n": 3, "flag": True, "none": None}
        assert sanitize(payload) == {"a": ["x", {"b": "y"}], "n": 3, "flag": True, "none": None}


class TestFixedWindowRateLimiter:
    def test_allows_up_to_max_then_reports_retry_after(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=3, clock=clock)

        assert [limiter.hit("10.0.0.1") for _ in range(3)] == [None, None, None]
        clock.now += 15.2
        assert limiter.hit("10.0.0.1") == 45

    def test_clients_are_independent(self):
        limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=1, clock=FakeClock())

        assert limiter.hit("a") is None
        assert limiter.hit("b") is None
        assert limiter.hit("a") is not None

    def test_window_resets(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=1, clock=clock)
        limiter.hit("a")
        assert limiter.hit("a") == 60

        clock.now += 60
        assert limiter.hit("a") is None

    def test_retry_after_is_at_least_one_second(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=1, clock=clock)
        limiter.hit("a")
        clock.now += 59.99
        assert limiter.hit("a") == 1

    def test_reset(self):
        limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=1, clock=FakeClock())
        limiter.hit("a")
        limiter.reset()
        assert limiter.hit("a") is None


def _request(peer: str, forwarded: str | None = None) -> Request:
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers, "client": (peer, 5000)})


class TestClientIdentifier:
    def test_forwarded_header_ignored_without_trusted_proxy(self):
        assert client_identifier(_request("198.51.100.7", "203.0.113.9")) == "198.51.100.7"

    def test_untrusted_peer_cannot_spoof_through_header(self):
        request = _request("198.51.100.7", "203.0.113.9")
        assert client_identifier(request, {"10.0.0.1"}) == "198.51.100.7"

    def test_rightmost_untrusted_hop_behind_trusted_proxies(self):
        request = _request("10.0.0.1", "1.1.1.1, 203.0.113.9, 10.0.0.2")
        assert client_identifier(request, {"10.0.0.1", "10.0.0.2"}) == "203.0.113.9"

    def test_trusted_proxy_without_header_falls_back_to_peer(self):
        assert client_identifier(_request("10.0.0.1"), {"10.0.0.1"}) == "10.0.0.1"
