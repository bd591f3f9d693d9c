from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock

from fastapi import HTTPException, Request


@dataclass(frozen=True)
class Rule:
    limit: int
    window_seconds: int
    detail: str


TEN_MINUTES = 10 * 60
HOUR = 60 * 60

# Keyed by the action being throttled; the subject (IP, email, user id)
# is appended per call.
RULES: dict[str, Rule] = {
    "signup": Rule(10, TEN_MINUTES, "Too many signup attempts"),
    "login": Rule(10, TEN_MINUTES, "Too many login attempts"),
    "verify": Rule(10, TEN_MINUTES, "Too many verification attempts"),
    "verify_resend": Rule(5, TEN_MINUTES, "Too many verification emails"),
    "reset_request": Rule(5, TEN_MINUTES, "Too many reset requests"),
    "reset": Rule(10, TEN_MINUTES, "Too many reset attempts"),
    "ai": Rule(20, TEN_MINUTES, "Too many AI requests"),
    "geo": Rule(120, 60, "Too many address lookups"),
    "submission": Rule(10, TEN_MINUTES, "Too many submissions"),
    "submission_complete": Rule(10, TEN_MINUTES, "Too many attempts"),
    "highlight": Rule(20, HOUR, "Too many highlight submissions"),
    "feedback": Rule(5, HOUR, "Too many feedback submissions"),
}


class RateLimiter:
    """
    Sliding-window limiter held in process memory.

    Counts reset on restart and are not shared between workers; run a single
    worker or put a shared store behind `check` when scaling out.
    """

    def __init__(self, rules: dict[str, Rule] | None = None) -> None:
        self._lock = Lock()
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self.rules = dict(rules or RULES)

    def check(self, action: str, subject: str) -> None:
        """Record one attempt at `action` by `subject`; 429 once the rule's window is full."""
        rule = self.rules[action]
        key = f"{action}:{subject}"
        now = time.monotonic()
        win_start = now - float(rule.window_seconds)
        with self._lock:
            q = self._events[key]
            while q and q[0] < win_start:
                q.popleft()
            if len(q) >= rule.limit:
                raise HTTPException(status_code=429, detail=rule.detail)
            q.append(now)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


def client_ip(request: Request) -> str:
    # First hop of X-Forwarded-For when behind the hosting proxy.
    fwd = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if fwd:
        return fwd
    return request.client.host if request.client else "unknown"


limiter = RateLimiter()
