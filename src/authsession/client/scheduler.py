"""
Refresh scheduling.

RefreshPolicy decides how long to wait before the next refresh; RefreshScheduler
owns the single timer that waits it out.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import anyio
from anyio.abc import TaskGroup

from authsession.client.clock import Clock
from authsession.shared.constants import MIN_REFRESH_INTERVAL, RETRY_MIN_DELAY, TOKEN_REFRESH_MARGIN

logger = logging.getLogger(__name__)


def compute_refresh_delay(
    expires_at: datetime | None,
    now: datetime,
    margin_seconds: float = TOKEN_REFRESH_MARGIN,
    interval_seconds: float | None = None,
) -> float:
    """
    Seconds to wait before the next refresh.

    A fixed interval, when configured, wins over the token's own expiry.
    Otherwise the refresh happens `margin_seconds` before expiry, or right away
    if that point has already passed.
    """
    if interval_seconds is not None:
        return float(interval_seconds)
    if expires_at is None:
        return float(MIN_REFRESH_INTERVAL)
    return max(0.0, (expires_at - now).total_seconds() - margin_seconds)


@dataclass(frozen=True)
class RefreshPolicy:
    margin_seconds: float = TOKEN_REFRESH_MARGIN
    interval_seconds: float | None = None
    retry_min_delay: float = RETRY_MIN_DELAY
    # None means retry forever
    max_attempts: int | None = None

    def next_delay(self, expires_at: datetime | None, now: datetime, after_failure: bool = False) -> float:
        delay = compute_refresh_delay(expires_at, now, self.margin_seconds, self.interval_seconds)
        if after_failure:
            return max(delay, self.retry_min_delay)
        return delay

    def should_give_up(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts


class RefreshScheduler:
    """
    A single cancellable refresh timer.

    Arming a new timer cancels the previous one, so at most one is ever live.
    The timer runs as a task in the caller's task group and dies with it.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._scope: anyio.CancelScope | None = None
        self._deadline: datetime | None = None

    @property
    def armed(self) -> bool:
        return self._scope is not None

    @property
    def deadline(self) -> datetime | None:
        return self._deadline

    def arm(self, task_group: TaskGroup, delay: float, on_fire: Callable[[], None]) -> datetime:
        self.cancel()

        deadline = self.clock.now() + timedelta(seconds=delay)
        scope = anyio.CancelScope()
        self._scope = scope
        self._deadline = deadline
        logger.debug(f"Refresh timer armed for {deadline.isoformat()} ({delay:.1f}s)")

        async def run_timer() -> None:
            with scope:
                await self.clock.sleep_until(deadline)
                if scope.cancel_called:
                    return
                if self._scope is scope:
                    self._scope = None
                    self._deadline = None
                on_fire()

        task_group.start_soon(run_timer)
        return deadline

    def cancel(self) -> None:
        if self._scope is not None:
            logger.debug("Refresh timer cancelled")
            self._scope.cancel()
        self._scope = None
        self._deadline = None
