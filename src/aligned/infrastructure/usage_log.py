from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import List, Optional, Protocol
import os


class UsageLog(Protocol):
    """Append-only log of assistant invocations (the ``ai_queries`` table)."""

    def count_since(self, user_id: str, since: datetime, until: Optional[datetime] = None) -> int: ...

    def record(self, user_id: str, action: str, question_id: Optional[str] = None) -> None: ...


@dataclass
class _UsageEntry:
    user_id: str
    action: str
    question_id: Optional[str]
    created_at: datetime


class InMemoryUsageLog:
    def __init__(self) -> None:
        self._entries: List[_UsageEntry] = []
        self._lock = RLock()

    def count_since(self, user_id: str, since: datetime, until: Optional[datetime] = None) -> int:
        with self._lock:
            return sum(
                1
                for e in self._entries
                if e.user_id == user_id and e.created_at >= since and (until is None or e.created_at < until)
            )

    def record(self, user_id: str, action: str, question_id: Optional[str] = None) -> None:
        with self._lock:
            self._entries.append(
                _UsageEntry(
                    user_id=user_id,
                    action=action,
                    question_id=question_id,
                    created_at=datetime.now(UTC),
                )
            )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_log: UsageLog | None = None


def get_usage_log() -> UsageLog:
    global _log
    if _log is not None:
        return _log
    impl = os.getenv("ALIGNED_USAGE_LOG_IMPL", "memory").lower()
    if os.getenv("DB_MODE", "").lower() == "mongo" or impl == "mongo":
        from .usage_log_mongo import MongoUsageLog

        _log = MongoUsageLog()
        return _log
    _log = InMemoryUsageLog()
    return _log
