"""
IB Request Throttle

Rolling-window quota for reference-data requests (historical bars and tick
snapshots) plus a global cooldown triggered by gateway pacing violations.

Rules:
1. At most ``max_requests`` reference-data requests in any trailing
   ``window_seconds`` (default 50 per 10 minutes, under the gateway's 60)
2. At least ``min_spacing_seconds`` between consecutive requests; callers
   block until the spacing has elapsed
3. A pacing violation or data-farm disconnection starts a
   ``cooldown_seconds`` cooldown during which every request fails fast

Over-quota and cooldown conditions raise ``RateLimitError`` rather than
waiting: the caller skips that enrichment step and tries again next cycle.
"""

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from portsync.config.settings import ThrottleSettings, get_throttle_settings
from portsync.errors import RateLimitError
from portsync.ib.error_classifier import IbErrorClassifier
from portsync.logging import get_logger, should_rate_limit_log

logger = get_logger(__name__)


class IbRequestThrottle:
    """Process-wide pacing guard for reference-data requests."""

    def __init__(
        self,
        settings: Optional[ThrottleSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_throttle_settings()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

        self._request_times: Deque[float] = deque()
        self._last_request_at: Optional[float] = None
        self._cooldown_until: Optional[float] = None

        self.stats = {
            "reserved": 0,
            "rejected_quota": 0,
            "rejected_cooldown": 0,
            "cooldowns_started": 0,
            "total_spacing_wait": 0.0,
        }

        logger.debug(
            f"Throttle initialized: {self.settings.max_requests} requests per "
            f"{self.settings.window_seconds:.0f}s, spacing {self.settings.min_spacing_seconds}s"
        )

    async def check_and_reserve(self, kind: str = "reference") -> None:
        """
        Reserve a slot for one reference-data request.

        Blocks for the minimum spacing when needed. Raises ``RateLimitError``
        when in cooldown or when the trailing window is full.
        """
        async with self._lock:
            now = self._clock()
            self._raise_if_cooling_down(now, kind)
            self._raise_if_window_full(now, kind)

            if self._last_request_at is not None:
                wait_time = self._last_request_at + self.settings.min_spacing_seconds - now
                if wait_time > 0:
                    logger.debug(f"Throttle spacing for {kind}: waiting {wait_time:.2f}s")
                    self.stats["total_spacing_wait"] += wait_time
                    await self._sleep(wait_time)
                    now = self._clock()
                    # A pacing error may have arrived while we slept
                    self._raise_if_cooling_down(now, kind)

            self._request_times.append(now)
            self._last_request_at = now
            self.stats["reserved"] += 1

    def _raise_if_cooling_down(self, now: float, kind: str) -> None:
        remaining = self._cooldown_remaining(now)
        if remaining > 0:
            self.stats["rejected_cooldown"] += 1
            minutes = int(-(-remaining // 60))
            raise RateLimitError(
                f"Pacing cooldown active, {kind} request blocked for {minutes} more minute(s)",
                retry_after_seconds=remaining,
                cooldown=True,
            )

    def _raise_if_window_full(self, now: float, kind: str) -> None:
        self._prune(now)
        if len(self._request_times) >= self.settings.max_requests:
            wait_time = self._request_times[0] + self.settings.window_seconds - now
            self.stats["rejected_quota"] += 1
            # One line per minute while every position of a batch is rejected
            if should_rate_limit_log("throttle_quota"):
                logger.info(
                    f"Reference-data quota reached ({len(self._request_times)}/"
                    f"{self.settings.max_requests}), {kind} request rejected for {wait_time:.0f}s"
                )
            raise RateLimitError(
                f"Request quota of {self.settings.max_requests} per "
                f"{self.settings.window_seconds:.0f}s reached",
                retry_after_seconds=max(wait_time, 0.001),
            )

    def _prune(self, now: float) -> None:
        cutoff = now - self.settings.window_seconds
        while self._request_times and self._request_times[0] <= cutoff:
            self._request_times.popleft()

    def _cooldown_remaining(self, now: float) -> float:
        if self._cooldown_until is None:
            return 0.0
        remaining = self._cooldown_until - now
        if remaining <= 0:
            logger.info("Pacing cooldown expired")
            self._cooldown_until = None
            return 0.0
        return remaining

    def can_make_request(self) -> Tuple[bool, float]:
        """
        Non-blocking check.

        Returns:
            Tuple of (can_proceed, seconds_to_wait)
        """
        now = self._clock()
        cooldown = self._cooldown_remaining(now)
        if cooldown > 0:
            return False, cooldown

        self._prune(now)
        max_wait = 0.0
        if len(self._request_times) >= self.settings.max_requests:
            max_wait = self._request_times[0] + self.settings.window_seconds - now
        if self._last_request_at is not None:
            max_wait = max(
                max_wait,
                self._last_request_at + self.settings.min_spacing_seconds - now,
            )
        return max_wait <= 0.0, max(max_wait, 0.0)

    def mark_pacing_violation(self, error_code: Optional[int] = None, message: str = "") -> None:
        """Start (or restart) the global cooldown."""
        self._cooldown_until = self._clock() + self.settings.cooldown_seconds
        self.stats["cooldowns_started"] += 1
        logger.warning(
            f"Pacing cooldown started for {self.settings.cooldown_seconds / 60:.0f} minutes "
            f"(IB error {error_code}: {message})"
        )

    def report_error(self, req_id: int, error_code: int, message: str) -> None:
        """Gateway error hook; starts the cooldown for pacing/farm errors."""
        if IbErrorClassifier.triggers_cooldown(error_code, message):
            self.mark_pacing_violation(error_code, message)

    @property
    def in_cooldown(self) -> bool:
        return self._cooldown_remaining(self._clock()) > 0

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        self._prune(now)
        cooldown = self._cooldown_remaining(now)
        return {
            "request_count": len(self._request_times),
            "max_requests": self.settings.max_requests,
            "window_seconds": self.settings.window_seconds,
            "is_pacing_violation": cooldown > 0,
            "cooldown_seconds_remaining": round(cooldown, 1),
            "cooldown_minutes_remaining": int(-(-cooldown // 60)) if cooldown > 0 else 0,
            "seconds_since_last_request": (
                None if self._last_request_at is None else now - self._last_request_at
            ),
            **self.stats,
        }

    def reset(self) -> None:
        """Clear the window and any cooldown (operator action and tests)."""
        self._request_times.clear()
        self._last_request_at = None
        self._cooldown_until = None
        logger.info("Request throttle reset")
