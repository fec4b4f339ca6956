"""Daily per-user quota for assistant invocations.

Check and record are separate, unlocked steps against an append-only usage log:
two concurrent requests near the ceiling may both pass ``check`` before either
records. That small burst is accepted; a request is never admitted once the
recorded count is already at the ceiling when it is checked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional

from ..errors import QuotaExceededError
from ..infrastructure.usage_log import UsageLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: int
    used: int
    reset_at: datetime

    def retry_after_seconds(self, now: datetime) -> int:
        return max(int((self.reset_at - now).total_seconds()), 1)


def _local_now() -> datetime:
    return datetime.now().astimezone()


def local_day_start(day: date, tz=None) -> datetime:
    """Server-local midnight for ``day`` as an aware datetime."""

    tz = tz or _local_now().tzinfo
    return datetime.combine(day, time.min).replace(tzinfo=tz)


class QuotaGuard:
    def __init__(
        self,
        usage_log: UsageLog,
        daily_limit: int,
        action: str = "ai_query",
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._log = usage_log
        self.daily_limit = daily_limit
        self.action = action
        self._clock = clock

    def check(self, user_id: str, day: Optional[date] = None) -> QuotaDecision:
        """Compare the invocations recorded on ``day`` (default today) against the ceiling.

        A failing count query propagates; the guard never admits on error.
        """

        now = self._clock()
        day = day or now.date()
        start = local_day_start(day, now.tzinfo)
        reset_at = start + timedelta(days=1)
        used = self._log.count_since(user_id, start, until=reset_at)
        remaining = max(0, self.daily_limit - used)
        return QuotaDecision(allowed=used < self.daily_limit, remaining=remaining, used=used, reset_at=reset_at)

    def enforce(self, user_id: str) -> QuotaDecision:
        decision = self.check(user_id)
        if not decision.allowed:
            logger.info(
                "quota_exceeded",
                extra={"user_id": user_id, "action": self.action, "used": decision.used, "limit": self.daily_limit},
            )
            raise QuotaExceededError(self.daily_limit, decision.retry_after_seconds(self._clock()))
        return decision

    def record(self, user_id: str, question_id: Optional[str] = None) -> None:
        self._log.record(user_id, self.action, question_id)
