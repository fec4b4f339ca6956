"""Model clients.

Clients are built once per process from :class:`AssistantConfig` and injected
into the pipeline. Each exposes a synchronous token iterator (``stream``) and
a blocking ``complete``; upstream failures surface as
:class:`UpstreamModelError` and are never retried within a request.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Mapping, Optional, Protocol
import json
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from langchain_openai import ChatOpenAI

from ..config import AssistantConfig, ModelSettings
from ..errors import UpstreamModelError
from .model_router import ModelRouter, ProviderSelection

logger = logging.getLogger(__name__)
LOG = logging.getLogger("aligned.llm")

Messages = List[Dict[str, str]]


class ModelClient(Protocol):
    provider: str
    model: str

    def stream(self, messages: Messages) -> Iterator[str]: ...

    def complete(self, messages: Messages) -> str: ...


def _build_session() -> requests.Session:
    session = requests.Session()
    # connection setup only; a request that reached the model is never replayed
    retry = Retry(total=1, connect=1, read=0, status=0, allowed_methods=frozenset(["POST", "GET"]))
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class LocalLLMClient:
    """OpenAI-compatible or Ollama endpoint reached over plain HTTP."""

    provider = "local"

    def __init__(
        self,
        base_url: str,
        model: str,
        settings: ModelSettings,
        api_style: str = "auto",
        timeout: tuple[float, float] = (3.0, 30.0),
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.settings = settings
        self.api_style = api_style.lower()
        self._timeout = timeout
        self._session = _build_session()

    def stream(self, messages: Messages) -> Iterator[str]:
        try:
            if self.api_style == "ollama":
                yield from self._stream_ollama(messages)
                return
            if self.api_style == "openai":
                yield from self._stream_openai(messages)
                return
            try:
                yield from self._stream_openai(messages)
            except requests.exceptions.ConnectionError as exc:
                LOG.warning(
                    "local_llm_stream_openai_failed_switching_to_ollama",
                    extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
                )
                self.api_style = "ollama"
                yield from self._stream_ollama(messages)
        except requests.exceptions.RequestException as exc:
            LOG.warning("llm_stream_failed", extra={"provider": self.provider, "model": self.model, "err": str(exc)})
            raise UpstreamModelError(stage="model") from exc

    def complete(self, messages: Messages) -> str:
        return "".join(self.stream(messages))

    def _stream_openai(self, messages: Messages) -> Iterator[str]:
        LOG.debug("local_llm_stream", extra={"model": self.model, "base_url": self.base_url})
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "max_tokens": self.settings.max_tokens,
            "temperature": self.settings.temperature,
        }
        with self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json=payload,
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield token

    def _stream_ollama(self, messages: Messages) -> Iterator[str]:
        LOG.debug("local_llm_stream_ollama", extra={"model": self.model, "base_url": self.base_url})
        payload = {
            "model": self.model,
            "prompt": self._messages_to_prompt(messages),
            "stream": True,
            "options": {"num_predict": self.settings.max_tokens, "temperature": self.settings.temperature},
        }
        with self._session.post(
            f"{self.base_url}/api/generate",
            json=payload,
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                try:
                    data = json.loads(raw_line.decode("utf-8"))
                except json.JSONDecodeError:
                    continue
                token = data.get("response") or ""
                if token:
                    yield token
                if data.get("done"):
                    break

    @staticmethod
    def _messages_to_prompt(messages: Messages) -> str:
        parts: List[str] = []
        for msg in messages:
            role = (msg.get("role") or "user").strip().upper()
            content = msg.get("content") or ""
            parts.append(f"{role}: {content}")
        parts.append("ASSISTANT:")
        return "\n".join(parts)


class HostedLLMClient:
    """Hosted OpenAI-compatible provider through ``langchain_openai``."""

    def __init__(self, chat: ChatOpenAI, provider: str, model: str) -> None:
        self._chat = chat
        self.provider = provider
        self.model = model

    def stream(self, messages: Messages) -> Iterator[str]:
        try:
            for chunk in self._chat.stream(messages):
                text = chunk.content if isinstance(chunk.content, str) else ""
                if text:
                    yield text
        except UpstreamModelError:
            raise
        except Exception as exc:
            LOG.warning("llm_stream_failed", extra={"provider": self.provider, "model": self.model, "err": str(exc)})
            raise UpstreamModelError(stage="model") from exc

    def complete(self, messages: Messages) -> str:
        try:
            res = self._chat.invoke(messages)
        except Exception as exc:
            LOG.warning("llm_invoke_failed", extra={"provider": self.provider, "model": self.model, "err": str(exc)})
            raise UpstreamModelError(stage="model") from exc
        return res.content if isinstance(res.content, str) else str(res.content)


class UnavailableModelClient:
    """Stand-in when no provider is configured; every call fails upstream."""

    provider = "none"
    model = "none"

    def stream(self, messages: Messages) -> Iterator[str]:
        LOG.warning("llm_not_configured")
        raise UpstreamModelError("LLM not configured", stage="model")

    def complete(self, messages: Messages) -> str:
        LOG.warning("llm_not_configured")
        raise UpstreamModelError("LLM not configured", stage="model")


def _base_url(selection: ProviderSelection, env: Mapping[str, str]) -> Optional[str]:
    if selection.base_url_env and env.get(selection.base_url_env):
        return env[selection.base_url_env]
    return selection.default_base_url


def build_model_client(config: AssistantConfig, purpose: str, settings: ModelSettings) -> ModelClient:
    """Resolve the provider for ``purpose`` and construct its client."""

    env = config.provider_env
    router = ModelRouter(env=env, preferred=config.provider, model_override=config.model)
    selection = router.maybe_select_provider(purpose)
    if selection is None:
        logger.warning("No model provider configured for purpose=%s", purpose)
        return UnavailableModelClient()

    base_url = _base_url(selection, env)
    if selection.name == "local":
        logger.info("Using local LLM provider base_url=%s model=%s", base_url, selection.model)
        return LocalLLMClient(
            base_url=base_url or "http://127.0.0.1:11434",
            model=selection.model,
            settings=settings,
            api_style=env.get("ALIGNED_LLM_LOCAL_API") or "auto",
            timeout=(3.0, config.pipeline_timeout_s),
        )

    api_key = env.get(selection.api_key_env) if selection.api_key_env else None
    logger.info(
        "Using remote LLM provider name=%s model=%s base_url=%s purpose=%s",
        selection.name,
        selection.model,
        base_url,
        purpose,
    )
    chat = ChatOpenAI(
        api_key=api_key,
        base_url=base_url,
        model=selection.model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        timeout=config.pipeline_timeout_s,
        max_retries=0,
    )
    return HostedLLMClient(chat, provider=selection.name, model=selection.model)
