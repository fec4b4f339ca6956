from __future__ import annotations

import logging

from ..domain.assistant_models import AIVoteResponse
from ..errors import NotFoundError, PersistenceError, ValidationError
from ..infrastructure.poll_store import PollStore
from .llm import ModelClient
from .prompts import build_vote_messages
from .vote_parser import extract_vote

logger = logging.getLogger(__name__)


class AIVoteService:
    """Cast the machine vote on a question, at most once per question."""

    def __init__(self, store: PollStore, client: ModelClient) -> None:
        self._store = store
        self._client = client

    def vote(self, question_id: str) -> AIVoteResponse:
        question = self._store.get_question(question_id)
        if question is None:
            raise NotFoundError("Question not found", stage="context")

        existing = self._store.get_ai_vote(question_id)
        if existing is not None:
            logger.info("ai_vote_exists", extra={"question_id": question_id, "vote": existing.vote})
            return AIVoteResponse(vote=existing.vote, reason=existing.ai_reasoning, created=False)

        # machine votes are attributed to the author, or any user for generated questions
        owner_id = question.author_id or self._store.any_user_id()
        if not owner_id:
            raise ValidationError("No valid user found for vote", stage="validate")

        raw = self._client.complete(build_vote_messages(question.content))
        extraction = extract_vote(raw)
        logger.info(
            "ai_vote_parsed",
            extra={
                "question_id": question_id,
                "vote": extraction.vote,
                "vote_strategy": extraction.vote_strategy,
                "reason_strategy": extraction.reason_strategy,
                "model": self._client.model,
            },
        )
        try:
            self._store.add_vote(
                owner_id,
                question_id,
                extraction.vote,
                is_ai=True,
                ai_reasoning=extraction.reason,
                ai_model=self._client.model,
            )
        except KeyError as exc:
            raise PersistenceError("Failed to save AI vote", stage="persist") from exc
        return AIVoteResponse(vote=extraction.vote, reason=extraction.reason, created=True)
