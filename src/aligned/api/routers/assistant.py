from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from ...domain.assistant_models import (
    AIVoteRequest,
    AIVoteResponse,
    AssistantRequest,
    InsightRequest,
    InsightResponse,
)
from ...framing import negotiate_codec
from ...security.auth import User, get_current_user
from ...services.ai_vote import AIVoteService
from ...services.assistant import AssistantPipeline
from ...services.insight import FALLBACK_INSIGHT, InsightService
from ...services.streaming import StreamMultiplexer
from ..deps import get_ai_vote_service, get_insight_service, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/assistant", tags=["assistant"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _tag(request: Request, user: User, variant: str) -> None:
    # read by the error handler in api.main
    request.state.user_id = user.id
    request.state.variant = variant


def _stream_response(mux: StreamMultiplexer) -> StreamingResponse:
    headers = dict(STREAM_HEADERS)
    headers["X-Stream-Framing"] = mux.codec.name
    return StreamingResponse(mux.frames(), media_type=mux.media_type, headers=headers)


@router.post("", response_class=StreamingResponse)
async def assistant_panel(
    payload: AssistantRequest,
    request: Request,
    user: User = Depends(get_current_user),
    pipeline: AssistantPipeline = Depends(get_pipeline),
):
    _tag(request, user, "assistant")
    codec = negotiate_codec(request.headers.get("accept"))
    mux = await pipeline.open_assistant_stream(user.id, payload, codec, is_disconnected=request.is_disconnected)
    return _stream_response(mux)


@router.post("/comments", response_class=StreamingResponse)
async def comment_mention(
    payload: AssistantRequest,
    request: Request,
    user: User = Depends(get_current_user),
    pipeline: AssistantPipeline = Depends(get_pipeline),
):
    _tag(request, user, "comment")
    codec = negotiate_codec(request.headers.get("accept"))
    mux = await pipeline.open_comment_stream(user.id, payload, codec, is_disconnected=request.is_disconnected)
    return _stream_response(mux)


@router.post("/insight", response_model=InsightResponse)
def assistant_insight(
    payload: InsightRequest,
    request: Request,
    user: User = Depends(get_current_user),
    service: InsightService = Depends(get_insight_service),
) -> InsightResponse:
    _tag(request, user, "insight")
    try:
        return InsightResponse(insight=service.insight(user.id, payload.context))
    except Exception:
        logger.exception("insight_failed", extra={"user_id": user.id, "stage": "insight"})
        return InsightResponse(insight=FALLBACK_INSIGHT)


@router.post("/vote", response_model=AIVoteResponse)
async def ai_vote(
    payload: AIVoteRequest,
    request: Request,
    user: User = Depends(get_current_user),
    service: AIVoteService = Depends(get_ai_vote_service),
) -> AIVoteResponse:
    _tag(request, user, "vote")
    return await run_in_threadpool(service.vote, payload.question_id)
