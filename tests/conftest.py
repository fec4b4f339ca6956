import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture
def store():
    from src.aligned.infrastructure.poll_store import InMemoryPollStore

    return InMemoryPollStore()


@pytest.fixture
def usage_log():
    from src.aligned.infrastructure.usage_log import InMemoryUsageLog

    return InMemoryUsageLog()


@pytest.fixture
def fake_model():
    from .utils import FakeModelClient

    return FakeModelClient(["Hello", " there", "!"])


@pytest.fixture
def pipeline(store, usage_log, fake_model):
    from src.aligned.config import AssistantConfig
    from src.aligned.services.assistant import AssistantPipeline

    return AssistantPipeline(AssistantConfig(), store, usage_log, assistant_client=fake_model, comment_client=fake_model)


@pytest.fixture
def api_client(pipeline, store, fake_model):
    """TestClient with the pipeline and services wired to in-memory fakes."""
    from fastapi.testclient import TestClient

    from src.aligned.api import deps
    from src.aligned.api.main import app
    from src.aligned.services.ai_vote import AIVoteService
    from src.aligned.services.insight import InsightService

    app.dependency_overrides[deps.get_pipeline] = lambda: pipeline
    app.dependency_overrides[deps.get_insight_service] = lambda: InsightService(store)
    app.dependency_overrides[deps.get_ai_vote_service] = lambda: AIVoteService(store, fake_model)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
