from __future__ import annotations

from datetime import UTC, datetime
import logging
import os
from typing import Optional

from pymongo import ASCENDING, MongoClient
from pymongo.errors import PyMongoError

from .usage_log import InMemoryUsageLog

logger = logging.getLogger(__name__)


class MongoUsageLog:
    """Mongo-backed usage log (``ai_queries`` collection).

    If Mongo is unreachable at startup and ALIGNED_USAGE_LOG_REQUIRE_MONGO is not
    true, calls go to an internal in-memory log to avoid breaking dev/CI. Errors
    from a live connection propagate so the quota check fails closed.
    """

    def __init__(self) -> None:
        self._fallback = InMemoryUsageLog()
        self._client: Optional[MongoClient] = None
        self._queries = None
        try:
            mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
            mongo_db = os.getenv("MONGO_DB", "aligned")
            self._client = MongoClient(mongo_url, serverSelectionTimeoutMS=500)
            self._client.server_info()
            self._queries = self._client[mongo_db]["ai_queries"]
            self._queries.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
        except PyMongoError as exc:
            if os.getenv("ALIGNED_USAGE_LOG_REQUIRE_MONGO", "false").lower() in ("1", "true", "yes"):
                raise RuntimeError("Mongo usage log required but not available") from exc
            logger.warning("usage_log_mongo_unavailable", extra={"err": str(exc)})
            self._client = None
            self._queries = None

    def _use_fallback(self) -> bool:
        return self._client is None or self._queries is None

    def count_since(self, user_id: str, since: datetime, until: Optional[datetime] = None) -> int:
        if self._use_fallback():
            return self._fallback.count_since(user_id, since, until)
        window = {"$gte": since}
        if until is not None:
            window["$lt"] = until
        return int(self._queries.count_documents({"user_id": user_id, "created_at": window}))  # type: ignore[union-attr]

    def record(self, user_id: str, action: str, question_id: Optional[str] = None) -> None:
        if self._use_fallback():
            self._fallback.record(user_id, action, question_id)
            return
        self._queries.insert_one(  # type: ignore[union-attr]
            {
                "user_id": user_id,
                "action": action,
                "question_id": question_id,
                "created_at": datetime.now(UTC),
            }
        )
