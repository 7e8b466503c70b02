"""Rate limiting middleware for FastAPI."""
from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""
    requests_per_minute: int = 60
    requests_per_hour: int = 1000
    translator_requests_per_minute: int = 10  # Instructions call the model
    translator_requests_per_hour: int = 100
    burst_limit: int = 10  # Max requests in 1 second


@dataclass
class SlidingWindow:
    """Request timestamps inside a fixed-length trailing window."""
    seconds: float
    stamps: Deque[float] = field(default_factory=deque)

    def prune(self, now: float) -> None:
        while self.stamps and self.stamps[0] <= now - self.seconds:
            self.stamps.popleft()

    def retry_after(self, now: float) -> int:
        if not self.stamps:
            return 0
        return max(1, int(self.seconds - (now - self.stamps[0])))

    def __len__(self) -> int:
        return len(self.stamps)


@dataclass
class ClientState:
    """Request windows for one client, tracked separately per budget."""
    burst: SlidingWindow = field(default_factory=lambda: SlidingWindow(1))
    minute: SlidingWindow = field(default_factory=lambda: SlidingWindow(60))
    hour: SlidingWindow = field(default_factory=lambda: SlidingWindow(3600))
    translator_minute: SlidingWindow = field(default_factory=lambda: SlidingWindow(60))
    translator_hour: SlidingWindow = field(default_factory=lambda: SlidingWindow(3600))

    def cleanup(self, now: float):
        for window in (self.burst, self.minute, self.hour, self.translator_minute, self.translator_hour):
            window.prune(now)

    def record_request(self, now: float, translator: bool):
        for window in (self.burst, self.minute, self.hour):
            window.stamps.append(now)
        if translator:
            self.translator_minute.stamps.append(now)
            self.translator_hour.stamps.append(now)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware with per-client tracking."""

    def __init__(self, app, config: RateLimitConfig | None = None):
        super().__init__(app)
        self.config = config or RateLimitConfig()
        self.clients: Dict[str, ClientState] = defaultdict(ClientState)

    def _get_client_id(self, request: Request) -> str:
        """Get a unique identifier for the client."""
        # Use X-Forwarded-For if behind a proxy, otherwise use client host
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _is_translator_endpoint(self, request: Request) -> bool:
        """Instruction endpoints call the model and get the stricter budget."""
        return request.method == "POST" and request.url.path.rstrip("/").endswith("/instructions")

    def _checks(self, state: ClientState, translator: bool) -> list[Tuple[SlidingWindow, int, str]]:
        checks = [
            (state.burst, self.config.burst_limit, "too many requests per second"),
            (state.minute, self.config.requests_per_minute, f"{self.config.requests_per_minute} requests per minute"),
            (state.hour, self.config.requests_per_hour, f"{self.config.requests_per_hour} requests per hour"),
        ]
        if translator:
            checks += [
                (state.translator_minute, self.config.translator_requests_per_minute,
                 f"{self.config.translator_requests_per_minute} instructions per minute"),
                (state.translator_hour, self.config.translator_requests_per_hour,
                 f"{self.config.translator_requests_per_hour} instructions per hour"),
            ]
        return checks

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process the request with rate limiting."""
        client_id = self._get_client_id(request)
        now = time.time()

        state = self.clients[client_id]
        state.cleanup(now)
        translator = self._is_translator_endpoint(request)

        for window, limit, description in self._checks(state, translator):
            if len(window) >= limit:
                retry_after = window.retry_after(now)
                logger.warning(f"[RATE] {client_id} limited on {request.url.path}: {description}")
                return JSONResponse(
                    status_code=429,
                    content={
                        "detail": f"Rate limit exceeded: {description}",
                        "retry_after": retry_after,
                    },
                    headers={"Retry-After": str(retry_after)},
                )

        state.record_request(now, translator)

        minute_window = state.translator_minute if translator else state.minute
        minute_limit = self.config.translator_requests_per_minute if translator else self.config.requests_per_minute
        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(minute_limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, minute_limit - len(minute_window)))
        response.headers["X-RateLimit-Reset"] = str(int(now + 60))

        return response
