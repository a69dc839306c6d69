"""
Tests for rate_limiting.py
Live event admission and HTTP request limits
"""

import json

import pytest
from flask import Flask, jsonify

from rate_limiting import EventRateLimiter, RateLimiter, create_rate_limit_middleware, rule_for_path


class TestEventRateLimiter:
    """Tests for the live event limiter"""

    def test_one_per_minute_burst(self):
        """Three events inside one minute with a limit of one: one accepted, two skipped"""
        limiter = EventRateLimiter(max_per_minute=1, ring_size=1)

        results = [limiter.try_acquire(now_ms=t) for t in (0, 10, 20)]

        assert results == [True, False, False]
        assert limiter.skipped == 2
        assert limiter.skip_since == 10

    def test_skip_streak_blocks_until_acknowledged(self):
        limiter = EventRateLimiter(max_per_minute=60, ring_size=1)
        assert limiter.try_acquire(now_ms=0)
        assert not limiter.try_acquire(now_ms=500)

        # Spacing has elapsed but the streak is still active
        assert not limiter.try_acquire(now_ms=5000)
        assert limiter.skipped == 2

        assert limiter.acknowledge() == 2
        assert limiter.skipped == 0
        assert limiter.skip_since is None
        assert limiter.try_acquire(now_ms=5001)

    def test_spacing(self):
        limiter = EventRateLimiter(max_per_minute=60, ring_size=1)
        assert limiter.try_acquire(now_ms=0)
        assert not limiter.try_acquire(now_ms=1000)
        limiter.acknowledge()
        assert limiter.try_acquire(now_ms=1001)

    def test_ring_allows_burst(self):
        """A ring of N admits N events back to back"""
        limiter = EventRateLimiter(max_per_minute=6, ring_size=3)
        assert all(limiter.try_acquire(now_ms=t) for t in (0, 1, 2))
        assert not limiter.try_acquire(now_ms=3)

    def test_never_exceeds_limit_in_any_minute(self):
        limiter = EventRateLimiter(max_per_minute=10, ring_size=1)
        accepted = []
        for t in range(0, 180000, 250):
            if limiter.try_acquire(now_ms=t):
                accepted.append(t)
            else:
                limiter.acknowledge()

        for start in accepted:
            in_window = [t for t in accepted if start <= t < start + 60000]
            assert len(in_window) <= 10

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            EventRateLimiter(max_per_minute=-1)

    def test_stats(self):
        limiter = EventRateLimiter(max_per_minute=1)
        limiter.try_acquire(now_ms=0)
        limiter.try_acquire(now_ms=1)
        stats = limiter.get_stats()
        assert stats["accepted"] == 1
        assert stats["skipped_total"] == 1
        assert stats["skipped"] == 1


class TestRateLimiter:
    """Tests for the HTTP request limiter"""

    def test_allows_within_limit(self):
        limiter = RateLimiter(per_minute=5)
        for _ in range(5):
            allowed, info = limiter.check_rate_limit("client1")
            assert allowed
        assert info["remaining"] == 0

    def test_blocks_over_limit(self):
        limiter = RateLimiter(per_minute=2)
        limiter.check_rate_limit("client1")
        limiter.check_rate_limit("client1")
        allowed, info = limiter.check_rate_limit("client1")
        assert not allowed
        assert info["retry_after"] > 0
        assert limiter.get_stats()["blocked_requests"] == 1

    def test_clients_are_independent(self):
        limiter = RateLimiter(per_minute=1)
        assert limiter.check_rate_limit("a")[0]
        assert limiter.check_rate_limit("b")[0]
        assert not limiter.check_rate_limit("a")[0]

    def test_reset_client(self):
        limiter = RateLimiter(per_minute=1)
        limiter.check_rate_limit("a")
        limiter.reset_client("a")
        assert limiter.check_rate_limit("a")[0]

    def test_rule_for_path(self):
        assert rule_for_path("/api/history/ethereum/0xabc") == "history"
        assert rule_for_path("/api/etherscan") == "history"
        assert rule_for_path("/api/notes") == "notes"
        assert rule_for_path("/api/ws/live") == "websocket"
        assert rule_for_path("/api/live") == "default"


class TestRateLimitMiddleware:
    """Tests for the Flask before_request hook"""

    @pytest.fixture
    def client(self):
        app = Flask(__name__)

        @app.route("/health")
        def health():
            return jsonify({"status": "healthy"})

        @app.route("/api/live")
        def live():
            return jsonify({"ok": True})

        create_rate_limit_middleware(app, RateLimiter(per_minute=1))
        app.config["TESTING"] = True
        with app.test_client() as client:
            yield client

    def test_returns_429(self, client):
        assert client.get("/api/live").status_code == 200
        response = client.get("/api/live")
        assert response.status_code == 429
        assert "Retry-After" in response.headers
        assert json.loads(response.data)["error"] == "Rate limit exceeded"

    def test_health_is_exempt(self, client):
        for _ in range(3):
            assert client.get("/health").status_code == 200


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
