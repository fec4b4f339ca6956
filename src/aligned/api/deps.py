"""Process-wide wiring for the API.

Configuration and model clients are built once, on first use, and handed to
routers through ``Depends``. Tests swap any of these via
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging

from ..config import AssistantConfig
from ..infrastructure.poll_store import get_poll_store
from ..infrastructure.usage_log import get_usage_log
from ..services.ai_vote import AIVoteService
from ..services.assistant import AssistantPipeline
from ..services.insight import InsightService
from ..services.llm import ModelClient, build_model_client

logger = logging.getLogger(__name__)

_config: AssistantConfig | None = None
_clients: dict[str, ModelClient] = {}
_pipeline: AssistantPipeline | None = None
_insight: InsightService | None = None
_ai_vote: AIVoteService | None = None


def get_config() -> AssistantConfig:
    global _config
    if _config is None:
        _config = AssistantConfig.from_env()
        logger.info(
            "assistant_config_loaded",
            extra={"provider": _config.provider, "timeout_s": _config.pipeline_timeout_s},
        )
    return _config


def get_model_client(purpose: str) -> ModelClient:
    client = _clients.get(purpose)
    if client is None:
        config = get_config()
        settings = {
            "assistant": config.assistant_model,
            "comment": config.comment_model,
            "vote": config.vote_model,
        }[purpose]
        client = build_model_client(config, purpose, settings)
        _clients[purpose] = client
    return client


def get_pipeline() -> AssistantPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = AssistantPipeline(
            get_config(),
            get_poll_store(),
            get_usage_log(),
            assistant_client=get_model_client("assistant"),
            comment_client=get_model_client("comment"),
        )
    return _pipeline


def get_insight_service() -> InsightService:
    global _insight
    if _insight is None:
        _insight = InsightService(get_poll_store())
    return _insight


def get_ai_vote_service() -> AIVoteService:
    global _ai_vote
    if _ai_vote is None:
        _ai_vote = AIVoteService(get_poll_store(), get_model_client("vote"))
    return _ai_vote


def reset_dependencies() -> None:
    """Drop cached wiring so the next request rebuilds it from the environment."""
    global _config, _pipeline, _insight, _ai_vote
    _config = None
    _pipeline = None
    _insight = None
    _ai_vote = None
    _clients.clear()
