"""Prometheus metrics for the Aligned assistant backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for assistant outcomes, quota rejections and emitted frames.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "aligned_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

ASSISTANT_REQUESTS = Counter(
    "aligned_assistant_requests_total",
    "Assistant invocations by variant and outcome",
    labelnames=("variant", "outcome"),
)

QUOTA_REJECTIONS = Counter(
    "aligned_quota_rejections_total",
    "Requests rejected by the daily quota",
    labelnames=("variant",),
)

STREAM_FRAMES = Counter(
    "aligned_stream_frames_total",
    "Frames written to assistant streams",
    labelnames=("kind",),
)


def sanitize_path(path: str) -> str:
    """Reduce paths to their first two static segments (``/api/assistant``)."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    return "/" + "/".join(segs[:2])


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except ValueError as exc:
            logger.debug("metrics_observe_failed", extra={"err": str(exc)})
        return response

    return middleware
