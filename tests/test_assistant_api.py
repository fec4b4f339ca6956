from __future__ import annotations

import json
from datetime import date

from src.aligned.api import deps
from src.aligned.api.main import app
from src.aligned.config import AssistantConfig
from src.aligned.framing import ERROR_SENTINEL, METADATA_SENTINEL, SentinelDemultiplexer
from src.aligned.security.rate_limit import local_day_start
from src.aligned.services.assistant import AssistantPipeline
from src.aligned.services.insight import FALLBACK_INSIGHT

from .utils import FakeModelClient, auth_headers


def _use_model(store, usage_log, model, config=None) -> AssistantPipeline:
    pipeline = AssistantPipeline(config or AssistantConfig(), store, usage_log, model, model)
    app.dependency_overrides[deps.get_pipeline] = lambda: pipeline
    return pipeline


def _split(body: bytes):
    out = {"text": [], "metadata": [], "errors": []}
    demux = SentinelDemultiplexer(out["text"].append, out["metadata"].append, out["errors"].append)
    demux.feed(body)
    demux.close()
    return "".join(out["text"]), out["metadata"], out["errors"]


def _question(store, content: str = "Is remote work better?"):
    store.add_user("asker", user_id="u1")
    return store.add_question(content, "Work")


# ---------------------------------------------------------------------------
# assistant panel
# ---------------------------------------------------------------------------
def test_requires_bearer_token(api_client):
    resp = api_client.post("/assistant", json={"message": "hi"})
    assert resp.status_code == 401


def test_rejects_invalid_token(api_client):
    resp = api_client.post("/assistant", json={"message": "hi"}, headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert resp.text == "Invalid token"


def test_empty_or_missing_message_is_400(api_client, fake_model):
    for body in ({"message": "   "}, {"context": {"page": "feed"}}):
        resp = api_client.post("/assistant", json=body, headers=auth_headers("u1"))
        assert resp.status_code == 400
        assert resp.text == "Message is required"
    assert fake_model.calls == []


def test_panel_streams_plain_text(api_client, fake_model, usage_log):
    resp = api_client.post(
        "/assistant",
        json={"message": "Who thinks like me?", "context": {"page": "feed"}, "history": []},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.headers["x-stream-framing"] == "sentinel"
    assert resp.text == "Hello there!"
    assert fake_model.calls[0][-1] == {"role": "user", "content": "Who thinks like me?"}
    assert fake_model.calls[0][0]["role"] == "system"
    assert usage_log.count_since("u1", local_day_start(date.today())) == 1


def test_panel_usage_records_question_id(api_client, store, usage_log):
    q = _question(store)
    resp = api_client.post(
        "/assistant",
        json={"message": "Explain this one", "context": {"page": "question", "questionId": q.question_id}},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 200
    assert usage_log._entries[-1].question_id == q.question_id

    api_client.post("/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    assert usage_log._entries[-1].question_id is None


def test_panel_envelope_framing(api_client):
    resp = api_client.post(
        "/assistant",
        json={"message": "hi"},
        headers={**auth_headers("u1"), "Accept": "application/x-ndjson"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")
    frames = [json.loads(line) for line in resp.text.splitlines() if line]
    assert [f["type"] for f in frames] == ["text", "text", "text"]
    assert "".join(f["text"] for f in frames) == "Hello there!"


def test_quota_allows_49th_and_rejects_at_50(api_client, pipeline, fake_model):
    for _ in range(49):
        pipeline.assistant_quota.record("u1")
    ok = api_client.post("/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    assert ok.status_code == 200

    calls_before = len(fake_model.calls)
    resp = api_client.post("/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    assert resp.status_code == 429
    assert "50 queries per day" in resp.text
    assert int(resp.headers["retry-after"]) >= 1
    assert len(fake_model.calls) == calls_before


def test_model_failure_before_first_token_is_500(api_client, store, usage_log):
    _use_model(store, usage_log, FakeModelClient(["x"], fail_before=True))
    resp = api_client.post("/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    assert resp.status_code == 500
    assert resp.text == "Sorry, I couldn't respond right now."


def test_model_failure_mid_stream_is_in_band(api_client, store, usage_log):
    _use_model(store, usage_log, FakeModelClient(["Hello", " there"], fail_after=1))
    resp = api_client.post("/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    assert resp.status_code == 200
    text, metadata, errors = _split(resp.content)
    assert text == "Hello"
    assert metadata == []
    assert errors[0]["stage"] == "model"
    assert ERROR_SENTINEL.encode() in resp.content


def test_slow_model_times_out_with_504(api_client, store, usage_log):
    config = AssistantConfig(pipeline_timeout_s=0.1)
    _use_model(store, usage_log, FakeModelClient(["late"], delay_s=0.5), config)
    resp = api_client.post("/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    assert resp.status_code == 504


def test_routes_are_mounted_under_api_prefix(api_client):
    resp = api_client.post("/api/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    assert resp.status_code == 200
    assert resp.text == "Hello there!"


# ---------------------------------------------------------------------------
# comment mentions
# ---------------------------------------------------------------------------
def test_comment_requires_question_id(api_client):
    resp = api_client.post("/assistant/comments", json={"message": "@AI thoughts?"}, headers=auth_headers("u1"))
    assert resp.status_code == 400
    assert resp.text == "Question ID is required"


def test_comment_unknown_question_is_404(api_client):
    resp = api_client.post(
        "/assistant/comments",
        json={"message": "@AI thoughts?", "context": {"page": "question", "questionId": "missing"}},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 404
    assert resp.text == "Question not found"


def test_comment_reply_is_streamed_then_saved(api_client, store, fake_model):
    q = _question(store)
    store.add_comment(q.question_id, "u1", "I love my commute-free mornings")
    resp = api_client.post(
        "/assistant/comments",
        json={"message": "@AI what do you think?", "context": {"page": "question", "questionId": q.question_id}},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 200
    assert METADATA_SENTINEL.encode() in resp.content
    text, metadata, errors = _split(resp.content)
    assert text == "Hello there!"
    assert errors == []
    record = metadata[0]
    assert record["question_id"] == q.question_id
    assert record["model"] == "fake-model"

    saved = [c for c in store.recent_comments(q.question_id, limit=10, include_ai=True) if c.is_ai]
    assert len(saved) == 1
    assert saved[0].comment_id == record["id"]
    assert saved[0].content == "Hello there!"
    assert saved[0].user_id == "u1"

    prompt = fake_model.calls[0][1]["content"]
    assert '- asker: "I love my commute-free mornings"' in prompt
    assert 'User asks: "what do you think?"' in prompt


def test_comment_persist_failure_is_in_band(api_client, store, monkeypatch):
    q = _question(store)

    def broken(*args, **kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(store, "add_comment", broken)
    resp = api_client.post(
        "/assistant/comments",
        json={"message": "@AI hi", "context": {"questionId": q.question_id}},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 200
    text, metadata, errors = _split(resp.content)
    assert text == "Hello there!"
    assert metadata == []
    assert errors[0]["stage"] == "persist"


def test_comment_quota_is_separate_from_panel(api_client, pipeline, store):
    q = _question(store)
    for _ in range(50):
        pipeline.assistant_quota.record("u1")
    panel = api_client.post("/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    assert panel.status_code == 429
    comment = api_client.post(
        "/assistant/comments",
        json={"message": "@AI hi", "context": {"questionId": q.question_id}},
        headers=auth_headers("u1"),
    )
    assert comment.status_code == 200


# ---------------------------------------------------------------------------
# insight and machine vote
# ---------------------------------------------------------------------------
def test_insight_welcomes_new_user(api_client, store):
    store.add_user("sam", user_id="u1")
    resp = api_client.post("/assistant/insight", json={"context": {"page": "feed"}}, headers=auth_headers("u1"))
    assert resp.status_code == 200
    assert resp.json()["insight"].startswith("Hey sam!")


def test_insight_falls_back_on_failure(api_client):
    class Broken:
        def insight(self, user_id, page):
            raise RuntimeError("store offline")

    app.dependency_overrides[deps.get_insight_service] = lambda: Broken()
    resp = api_client.post("/assistant/insight", json={}, headers=auth_headers("u1"))
    assert resp.status_code == 200
    assert resp.json() == {"insight": FALLBACK_INSIGHT}


def test_machine_vote_endpoint(api_client, store, fake_model):
    q = _question(store)
    fake_model.reply = "VOTE: YES\nREASON: Fewer commutes, happier people."
    resp = api_client.post("/assistant/vote", json={"questionId": q.question_id}, headers=auth_headers("u1"))
    assert resp.status_code == 200
    assert resp.json() == {"vote": "YES", "reason": "Fewer commutes, happier people.", "created": True}

    again = api_client.post("/assistant/vote", json={"questionId": q.question_id}, headers=auth_headers("u1"))
    assert again.json()["created"] is False


def test_machine_vote_unknown_question(api_client):
    resp = api_client.post("/assistant/vote", json={"questionId": "missing"}, headers=auth_headers("u1"))
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# health and metrics
# ---------------------------------------------------------------------------
def test_health_endpoints(api_client):
    for path in ("/health", "/api/health"):
        resp = api_client.get(path)
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


def test_metrics_expose_assistant_counters(api_client):
    api_client.post("/assistant", json={"message": "hi"}, headers=auth_headers("u1"))
    resp = api_client.get("/metrics")
    assert resp.status_code == 200
    assert "aligned_assistant_requests_total" in resp.text
    assert "aligned_request_latency_seconds" in resp.text
