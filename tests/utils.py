from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Dict, Iterator, List, Optional

from src.aligned.errors import UpstreamModelError
from src.aligned.security.auth import User, create_access_token


class FakeModelClient:
    """Scripted stand-in for a model client; records every prompt it receives."""

    provider = "fake"

    def __init__(
        self,
        tokens: List[str],
        *,
        model: str = "fake-model",
        fail_before: bool = False,
        fail_after: Optional[int] = None,
        delay_s: float = 0.0,
        reply: Optional[str] = None,
    ) -> None:
        self.tokens = tokens
        self.model = model
        self.fail_before = fail_before
        self.fail_after = fail_after
        self.delay_s = delay_s
        self.reply = reply
        self.calls: List[List[Dict[str, str]]] = []
        self.closed = False

    def stream(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        self.calls.append(messages)
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
            if self.fail_before:
                raise UpstreamModelError(stage="model")
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i >= self.fail_after:
                    raise UpstreamModelError(stage="model")
                yield token
        finally:
            self.closed = True

    def complete(self, messages: List[Dict[str, str]]) -> str:
        self.calls.append(messages)
        if self.fail_before:
            raise UpstreamModelError(stage="model")
        return self.reply if self.reply is not None else "".join(self.tokens)


def auth_headers(user_id: str, name: str = "") -> Dict[str, str]:
    token = create_access_token(User(id=user_id, name=name))
    return {"Authorization": f"Bearer {token}"}


def seed_votes(store, user_id: str, votes: Dict[str, str], *, start: Optional[datetime] = None) -> None:
    """Cast ``{question_id: vote}`` for a user, one second apart."""
    start = start or datetime.now(UTC) - timedelta(hours=1)
    for i, (question_id, vote) in enumerate(votes.items()):
        store.add_vote(user_id, question_id, vote, created_at=start + timedelta(seconds=i))
