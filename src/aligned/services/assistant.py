"""Assistant request pipeline.

validate -> quota -> context -> prompt -> record usage -> first model token,
all under the configured wall clock. Anything that fails before the first
token raises an :class:`AssistantError` the router maps to a status code;
later failures travel in-band through the :class:`StreamMultiplexer`.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..config import AssistantConfig
from ..domain.assistant_models import AssistantRequest
from ..errors import (
    AssistantError,
    NotFoundError,
    PersistenceError,
    PipelineTimeoutError,
    QuotaExceededError,
    UpstreamModelError,
    ValidationError,
)
from ..framing import Codec
from ..infrastructure.poll_store import PollStore
from ..infrastructure.usage_log import UsageLog
from ..observability.metrics import QUOTA_REJECTIONS
from ..security.rate_limit import QuotaGuard
from .context import ContextAggregator
from .llm import Messages, ModelClient
from .prompts import PromptBuilder, build_comment_messages
from .ranking import RecommendationRanker, vote_stats
from .streaming import DisconnectProbe, StreamMultiplexer, TokenStream

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMMENT_THREAD_LIMIT = 10
AI_AUTHOR = "AI"


class _Stage:
    """Tracks the pipeline stage so failures are reported where they happened."""

    def __init__(self) -> None:
        self.name = "validate"


class AssistantPipeline:
    def __init__(
        self,
        config: AssistantConfig,
        store: PollStore,
        usage_log: UsageLog,
        assistant_client: ModelClient,
        comment_client: Optional[ModelClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self._store = store
        self._assistant_client = assistant_client
        self._comment_client = comment_client or assistant_client
        self.aggregator = ContextAggregator(store, RecommendationRanker(config.caps))
        self.prompts = PromptBuilder(config.history_window)
        guard_kwargs: Dict[str, Any] = {"clock": clock} if clock is not None else {}
        self.assistant_quota = QuotaGuard(usage_log, config.assistant_daily_limit, action="assistant", **guard_kwargs)
        self.comment_quota = QuotaGuard(usage_log, config.comment_daily_limit, action="comment_mention", **guard_kwargs)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    async def _off_loop(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    @staticmethod
    def _message(request: AssistantRequest) -> str:
        message = (request.message or "").strip()
        if not message:
            raise ValidationError(stage="validate")
        return message

    async def _bounded(self, stage: _Stage, user_id: str, work: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(work, self.config.pipeline_timeout_s)
        except asyncio.TimeoutError as exc:
            raise PipelineTimeoutError(stage=stage.name) from exc
        except AssistantError:
            raise
        except Exception as exc:
            logger.exception("pipeline_failed", extra={"user_id": user_id, "stage": stage.name})
            raise AssistantError(stage=stage.name) from exc

    async def _enforce(self, guard: QuotaGuard, variant: str, user_id: str) -> None:
        try:
            await self._off_loop(guard.enforce, user_id)
        except QuotaExceededError:
            QUOTA_REJECTIONS.labels(variant=variant).inc()
            raise

    async def _open(self, stage: _Stage, client: ModelClient, messages: Messages, deadline: float) -> tuple[TokenStream, str]:
        stage.name = "model"
        try:
            tokens = TokenStream(client.stream(messages), deadline)
            first = await tokens.next(stage="model")
        except AssistantError:
            raise
        except Exception as exc:
            raise UpstreamModelError(stage="model") from exc
        if first is None:
            tokens.close()
            raise UpstreamModelError("The model returned an empty reply.", stage="model")
        return tokens, first

    # ------------------------------------------------------------------
    # assistant panel
    # ------------------------------------------------------------------
    async def open_assistant_stream(
        self,
        user_id: str,
        request: AssistantRequest,
        codec: Codec,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> StreamMultiplexer:
        stage = _Stage()
        message = self._message(request)
        deadline = asyncio.get_running_loop().time() + self.config.pipeline_timeout_s

        async def prepare() -> tuple[TokenStream, str]:
            stage.name = "quota"
            await self._enforce(self.assistant_quota, "assistant", user_id)
            stage.name = "context"
            snapshot = await self._off_loop(self.aggregator.build, user_id, request.context)
            stage.name = "prompt"
            messages = self.prompts.build(snapshot, request.history, message)
            stage.name = "record"
            await self._off_loop(self.assistant_quota.record, user_id, request.context.question_id)
            return await self._open(stage, self._assistant_client, messages, deadline)

        tokens, first = await self._bounded(stage, user_id, prepare())
        logger.info("assistant_stream_opened", extra={"user_id": user_id, "page": request.context.page})
        return StreamMultiplexer(
            tokens,
            codec,
            variant="assistant",
            user_id=user_id,
            first=first,
            is_disconnected=is_disconnected,
        )

    # ------------------------------------------------------------------
    # comment mention
    # ------------------------------------------------------------------
    def _thread_lines(self, question_id: str) -> List[str]:
        lines: List[str] = []
        recent = self._store.recent_comments(question_id, COMMENT_THREAD_LIMIT, include_ai=True)
        for comment in reversed(recent):
            author = AI_AUTHOR if comment.is_ai else (self._store.get_username(comment.user_id) or "Anonymous")
            lines.append(f'- {author}: "{comment.content}"')
        return lines

    def _persist_reply(self, user_id: str, question_id: str, model: str) -> Callable[[str], Dict[str, Any]]:
        def persist(text: str) -> Dict[str, Any]:
            try:
                comment = self._store.add_comment(question_id, user_id, text.strip(), is_ai=True, ai_model=model)
            except KeyError as exc:
                raise PersistenceError("Failed to save AI response", stage="persist") from exc
            logger.info("ai_comment_saved", extra={"user_id": user_id, "question_id": question_id, "id": comment.comment_id})
            return {
                "id": comment.comment_id,
                "created_at": comment.created_at.isoformat(),
                "question_id": question_id,
                "model": model,
            }

        return persist

    async def open_comment_stream(
        self,
        user_id: str,
        request: AssistantRequest,
        codec: Codec,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> StreamMultiplexer:
        stage = _Stage()
        message = self._message(request)
        question_id = request.context.question_id
        if not question_id:
            raise ValidationError("Question ID is required", stage="validate")
        deadline = asyncio.get_running_loop().time() + self.config.pipeline_timeout_s

        async def prepare() -> tuple[TokenStream, str]:
            stage.name = "quota"
            await self._enforce(self.comment_quota, "comment", user_id)
            stage.name = "context"
            question = await self._off_loop(self._store.get_question, question_id)
            if question is None:
                raise NotFoundError("Question not found", stage="context")
            votes = await self._off_loop(self._store.question_votes, question_id)
            thread = await self._off_loop(self._thread_lines, question_id)
            stage.name = "prompt"
            messages = build_comment_messages(question.content, vote_stats(v.vote for v in votes), thread, message)
            stage.name = "record"
            await self._off_loop(self.comment_quota.record, user_id, question_id)
            return await self._open(stage, self._comment_client, messages, deadline)

        tokens, first = await self._bounded(stage, user_id, prepare())
        logger.info("comment_stream_opened", extra={"user_id": user_id, "question_id": question_id})
        return StreamMultiplexer(
            tokens,
            codec,
            variant="comment",
            user_id=user_id,
            first=first,
            on_complete=self._persist_reply(user_id, question_id, self._comment_client.model),
            is_disconnected=is_disconnected,
        )
