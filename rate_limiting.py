"""
Rate limiting
Live event admission for ingestion sessions, and request limits for the HTTP API
"""

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

from flask import jsonify, request

from config import config

logger = logging.getLogger(__name__)


# ==================== LIVE EVENT LIMITER ====================


@dataclass
class EventLimiterState:
    """Newest-first ring of accepted timestamps (ms) plus the current skip streak"""

    accepted: Deque[float]
    skipped: int = 0
    skip_since: Optional[float] = None
    total_accepted: int = 0
    total_skipped: int = 0


class EventRateLimiter:
    """
    Admit at most max_per_minute live events in any rolling minute

    Spacing T = 60000 / max_per_minute ms. With a ring of the last N accepted
    timestamps an event is accepted when no skip streak is active and the
    oldest remembered acceptance is more than N * T ms old. Rejected events
    are only counted; the streak lasts until acknowledge() is called.
    """

    def __init__(self, max_per_minute: Optional[int] = None, ring_size: Optional[int] = None):
        self.max_per_minute = max_per_minute or config.MAX_EVENTS_PER_MINUTE
        self.ring_size = ring_size or config.RATE_LIMIT_RING_SIZE
        if self.max_per_minute < 1 or self.ring_size < 1:
            raise ValueError("max_per_minute and ring_size must be positive")
        self.interval_ms = 60000 / self.max_per_minute
        self.state = EventLimiterState(accepted=deque(maxlen=self.ring_size))

    @property
    def skipped(self) -> int:
        return self.state.skipped

    @property
    def skip_since(self) -> Optional[float]:
        return self.state.skip_since

    def _window_open(self, now_ms: float) -> bool:
        ring = self.state.accepted
        if len(ring) < self.ring_size:
            return True
        oldest = ring[-1]
        return oldest < now_ms - self.interval_ms * self.ring_size

    def try_acquire(self, now_ms: Optional[float] = None) -> bool:
        """Accept or count one event"""
        now_ms = time.time() * 1000 if now_ms is None else now_ms

        if self.state.skipped == 0 and self._window_open(now_ms):
            self.state.accepted.appendleft(now_ms)
            self.state.total_accepted += 1
            return True

        self.state.skipped += 1
        self.state.total_skipped += 1
        if self.state.skipped == 1:
            self.state.skip_since = now_ms
            logger.warning(
                f"Rate limit of {self.max_per_minute} events per minute reached, "
                f"now counting skipped events"
            )
        return False

    def acknowledge(self) -> int:
        """Clear the skip streak; returns how many events it held"""
        skipped = self.state.skipped
        self.state.skipped = 0
        self.state.skip_since = None
        return skipped

    def get_stats(self) -> Dict:
        """Get limiter statistics"""
        return {
            "max_per_minute": self.max_per_minute,
            "ring_size": self.ring_size,
            "accepted": self.state.total_accepted,
            "skipped_total": self.state.total_skipped,
            "skipped": self.state.skipped,
            "skip_since": self.state.skip_since,
        }


# ==================== API REQUEST LIMITER ====================


@dataclass
class RateLimitRule:
    """Rate limit rule configuration"""

    requests: int  # Number of requests
    window: int  # Time window in seconds


@dataclass
class RateLimitState:
    """Track rate limit state for a client"""

    requests: list = field(default_factory=list)  # Timestamps of requests
    blocked_until: Optional[float] = None


class RateLimiter:
    """Sliding-window request limits per client and route group"""

    def __init__(self, per_minute: Optional[int] = None):
        per_minute = per_minute or config.RATE_LIMIT_PER_MINUTE
        self.rules = {
            "default": RateLimitRule(requests=per_minute, window=60),
            # explorer-backed routes fan out to upstream APIs
            "history": RateLimitRule(requests=max(1, per_minute // 2), window=60),
            "notes": RateLimitRule(requests=per_minute, window=60),
            "websocket": RateLimitRule(requests=10, window=60),
        }
        self.states: Dict[str, RateLimitState] = defaultdict(RateLimitState)
        self.stats = {"total_requests": 0, "blocked_requests": 0}

    def check_rate_limit(self, client_id: str, rule_name: str = "default") -> tuple:
        """
        Check if request is within rate limit
        Returns (allowed, info)
        """
        self.stats["total_requests"] += 1
        rule = self.rules.get(rule_name, self.rules["default"])
        state = self.states[f"{client_id}:{rule_name}"]
        current_time = time.time()

        if state.blocked_until and current_time < state.blocked_until:
            self.stats["blocked_requests"] += 1
            return False, {
                "error": "Rate limit exceeded",
                "retry_after": int(state.blocked_until - current_time) + 1,
            }

        window_start = current_time - rule.window
        state.requests = [ts for ts in state.requests if ts > window_start]

        if len(state.requests) >= rule.requests:
            # Block for the remainder of the window
            state.blocked_until = state.requests[0] + rule.window
            self.stats["blocked_requests"] += 1
            return False, {
                "error": "Rate limit exceeded",
                "limit": rule.requests,
                "window": rule.window,
                "retry_after": int(state.blocked_until - current_time) + 1,
            }

        state.requests.append(current_time)
        return True, {
            "limit": rule.requests,
            "remaining": rule.requests - len(state.requests),
            "reset": int(state.requests[0] + rule.window),
            "window": rule.window,
        }

    def reset_client(self, client_id: str) -> None:
        """Reset rate limit state for a client"""
        for key in [k for k in self.states if k.startswith(f"{client_id}:")]:
            del self.states[key]

    def get_stats(self) -> Dict:
        """Get rate limiter statistics"""
        total = self.stats["total_requests"]
        return {
            "total_requests": total,
            "blocked_requests": self.stats["blocked_requests"],
            "active_clients": len(self.states),
            "block_rate": (self.stats["blocked_requests"] / total * 100) if total else 0,
        }


def rule_for_path(path: str) -> str:
    if path.startswith(("/api/history", "/api/etherscan")):
        return "history"
    if path.startswith("/api/notes"):
        return "notes"
    if path.startswith("/api/ws"):
        return "websocket"
    return "default"


def create_rate_limit_middleware(app, rate_limiter: RateLimiter):
    """Install the limiter as Flask before_request middleware"""

    @app.before_request
    def check_rate_limit():
        if request.path in ["/", "/health"] or request.path.startswith("/api/docs"):
            return None

        allowed, info = rate_limiter.check_rate_limit(
            request.remote_addr or "unknown", rule_for_path(request.path)
        )
        if not allowed:
            response = jsonify(info)
            response.status_code = 429
            response.headers["Retry-After"] = str(info["retry_after"])
            return response

        return None
