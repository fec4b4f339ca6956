import json
from types import SimpleNamespace

import pytest
import requests

from src.aligned.config import AssistantConfig, ModelSettings
from src.aligned.errors import UpstreamModelError
from src.aligned.services.llm import (
    HostedLLMClient,
    LocalLLMClient,
    UnavailableModelClient,
    build_model_client,
)

SETTINGS = ModelSettings(max_tokens=50, temperature=0.5)


class FakeResponse:
    def __init__(self, lines, status_error=None):
        self._lines = lines
        self._status_error = status_error

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self._status_error is not None:
            raise self._status_error

    def iter_lines(self):
        return iter(self._lines)


class FakeSession:
    def __init__(self, *responses):
        self._responses = list(responses)
        self.posts = []

    def post(self, url, json=None, timeout=None, stream=False):
        self.posts.append((url, json))
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _sse(*tokens):
    lines = [b"data: " + json.dumps({"choices": [{"delta": {"content": t}}]}).encode() for t in tokens]
    return lines + [b"", b"data: [DONE]"]


def _ollama(*tokens):
    lines = [json.dumps({"response": t, "done": False}).encode() for t in tokens]
    return lines + [json.dumps({"response": "", "done": True}).encode()]


def _local(api_style, *responses):
    client = LocalLLMClient("http://llm:8080/", "llama", SETTINGS, api_style=api_style)
    client._session = FakeSession(*responses)
    return client


def test_local_openai_style_stream():
    client = _local("openai", FakeResponse(_sse("Hel", "lo")))
    assert list(client.stream([{"role": "user", "content": "hi"}])) == ["Hel", "lo"]
    url, payload = client._session.posts[0]
    assert url == "http://llm:8080/v1/chat/completions"
    assert payload["stream"] is True
    assert payload["max_tokens"] == 50


def test_local_ollama_style_stream_and_prompt():
    client = _local("ollama", FakeResponse(_ollama("a", "b")))
    assert client.complete([{"role": "system", "content": "be nice"}, {"role": "user", "content": "hi"}]) == "ab"
    url, payload = client._session.posts[0]
    assert url == "http://llm:8080/api/generate"
    assert payload["prompt"] == "SYSTEM: be nice\nUSER: hi\nASSISTANT:"


def test_local_auto_switches_to_ollama_on_connection_error():
    client = _local("auto", requests.exceptions.ConnectionError("refused"), FakeResponse(_ollama("ok")))
    assert list(client.stream([])) == ["ok"]
    assert client.api_style == "ollama"


def test_local_http_error_becomes_upstream_error():
    client = _local("openai", FakeResponse([], status_error=requests.exceptions.HTTPError("502")))
    with pytest.raises(UpstreamModelError) as exc_info:
        list(client.stream([]))
    assert exc_info.value.stage == "model"


class FakeChat:
    def __init__(self, chunks=(), reply="", error=None):
        self.chunks = chunks
        self.reply = reply
        self.error = error

    def stream(self, messages):
        for chunk in self.chunks:
            yield SimpleNamespace(content=chunk)
        if self.error:
            raise self.error

    def invoke(self, messages):
        if self.error:
            raise self.error
        return SimpleNamespace(content=self.reply)


def test_hosted_client_streams_text_chunks():
    client = HostedLLMClient(FakeChat(chunks=["Hi", "", " there"]), provider="openai", model="gpt")
    assert list(client.stream([])) == ["Hi", " there"]


def test_hosted_client_wraps_provider_errors():
    client = HostedLLMClient(FakeChat(chunks=["Hi"], error=RuntimeError("rate limited")), provider="openai", model="gpt")
    stream = client.stream([])
    assert next(stream) == "Hi"
    with pytest.raises(UpstreamModelError):
        next(stream)

    failing = HostedLLMClient(FakeChat(error=RuntimeError("down")), provider="openai", model="gpt")
    with pytest.raises(UpstreamModelError):
        failing.complete([])


def test_hosted_client_complete():
    client = HostedLLMClient(FakeChat(reply="VOTE: YES"), provider="gemini", model="flash")
    assert client.complete([]) == "VOTE: YES"


def test_build_without_provider_is_unavailable():
    client = build_model_client(AssistantConfig(), "assistant", SETTINGS)
    assert isinstance(client, UnavailableModelClient)
    with pytest.raises(UpstreamModelError):
        client.complete([])
    with pytest.raises(UpstreamModelError):
        client.stream([])


def test_build_hosted_client_from_env():
    config = AssistantConfig.from_env({"OPENAI_API_KEY": "sk-test", "ALIGNED_MODEL": "gpt-4o-mini"})
    client = build_model_client(config, "assistant", SETTINGS)
    assert isinstance(client, HostedLLMClient)
    assert client.provider == "openai"
    assert client.model == "gpt-4o-mini"


def test_build_local_client_from_env():
    config = AssistantConfig.from_env(
        {"ALIGNED_ENABLE_LOCAL_PROVIDER": "1", "LOCAL_BASE_URL": "http://llm:8080", "ALIGNED_LLM_LOCAL_API": "openai"}
    )
    client = build_model_client(config, "vote", SETTINGS)
    assert isinstance(client, LocalLLMClient)
    assert client.base_url == "http://llm:8080"
    assert client.api_style == "openai"
