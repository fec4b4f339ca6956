"""Process-wide assistant configuration.

All environment lookups for the assistant pipeline happen here so call sites
receive an explicit :class:`AssistantConfig` instead of reading ``os.environ``.

Env vars:
- ALIGNED_ASSISTANT_DAILY_LIMIT (default 50)
- ALIGNED_COMMENT_DAILY_LIMIT (default 100)
- ALIGNED_HISTORY_WINDOW (default 10)
- ALIGNED_PIPELINE_TIMEOUT_S (default 10)
- ALIGNED_MODEL_PROVIDER / ALIGNED_MODEL (optional overrides for the router)
- OPENAI_API_KEY, GEMINI_API_KEY, XAI_API_KEY, LOCAL_BASE_URL ... (see model_router)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


@dataclass(frozen=True)
class ModelSettings:
    max_tokens: int
    temperature: float


@dataclass(frozen=True)
class RankingCaps:
    similar_discovered: int = 20
    similar_evaluated: int = 10
    min_common_questions: int = 3
    recent_questions: int = 50
    questions_evaluated: int = 20
    top_n: int = 5


@dataclass(frozen=True)
class AssistantConfig:
    assistant_daily_limit: int = 50
    comment_daily_limit: int = 100
    history_window: int = 10
    pipeline_timeout_s: float = 10.0
    provider: Optional[str] = None
    model: Optional[str] = None
    assistant_model: ModelSettings = field(default_factory=lambda: ModelSettings(max_tokens=500, temperature=0.8))
    comment_model: ModelSettings = field(default_factory=lambda: ModelSettings(max_tokens=150, temperature=0.8))
    vote_model: ModelSettings = field(default_factory=lambda: ModelSettings(max_tokens=256, temperature=0.7))
    caps: RankingCaps = field(default_factory=RankingCaps)
    provider_env: Dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "AssistantConfig":
        env = env if env is not None else os.environ
        provider = (env.get("ALIGNED_MODEL_PROVIDER") or "").strip().lower() or None
        model = (env.get("ALIGNED_MODEL") or "").strip() or None
        return AssistantConfig(
            assistant_daily_limit=_env_int(env, "ALIGNED_ASSISTANT_DAILY_LIMIT", 50),
            comment_daily_limit=_env_int(env, "ALIGNED_COMMENT_DAILY_LIMIT", 100),
            history_window=_env_int(env, "ALIGNED_HISTORY_WINDOW", 10),
            pipeline_timeout_s=_env_float(env, "ALIGNED_PIPELINE_TIMEOUT_S", 10.0),
            provider=provider,
            model=model,
            provider_env=dict(env),
        )
