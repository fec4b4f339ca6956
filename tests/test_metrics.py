from fastapi.testclient import TestClient

from src.aligned.api.main import app
from src.aligned.observability.metrics import sanitize_path


client = TestClient(app)


def test_metrics_endpoint_exposes_histogram():
    # Trigger a request to ensure histogram has an observation
    r = client.get("/health")
    assert r.status_code == 200

    m = client.get("/metrics")
    assert m.status_code == 200
    body = m.text

    assert "# HELP aligned_request_latency_seconds" in body
    assert "# TYPE aligned_request_latency_seconds histogram" in body
    assert "aligned_request_latency_seconds_count" in body
    assert "# TYPE aligned_quota_rejections_total counter" in body
    assert "# TYPE aligned_stream_frames_total counter" in body


def test_api_metrics_alias():
    assert client.get("/api/metrics").status_code == 200


def test_sanitize_path_keeps_two_segments():
    assert sanitize_path("/api/assistant/comments?x=1") == "/api/assistant"
    assert sanitize_path("/health") == "/health"
    assert sanitize_path("") == "/"
    assert sanitize_path("///") == "/"
