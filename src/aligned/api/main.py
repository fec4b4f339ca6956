from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.assistant import router as assistant_router
from ..errors import AssistantError, QuotaExceededError
from ..observability.metrics import ASSISTANT_REQUESTS, metrics_middleware_factory

load_dotenv()  # Load environment variables from .env if present (OPENAI_API_KEY, JWT_SECRET, etc.)

logger = logging.getLogger(__name__)

app = FastAPI(title="Aligned Assistant API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(assistant_router)

# Also expose the same routers under /api
app.include_router(assistant_router, prefix="/api")

# CORS (for Next.js dev server on localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AssistantError)
async def assistant_error_handler(request: Request, exc: AssistantError) -> PlainTextResponse:
    user_id = getattr(request.state, "user_id", None)
    variant = getattr(request.state, "variant", "unknown")
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "assistant_request_failed",
        extra={"user_id": user_id, "stage": exc.stage, "status": exc.status_code, "err": exc.message},
    )
    ASSISTANT_REQUESTS.labels(variant=variant, outcome=str(exc.status_code)).inc()
    headers = {}
    if isinstance(exc, QuotaExceededError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return PlainTextResponse(exc.message, status_code=exc.status_code, headers=headers)


def _health_payload() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
        },
    }


@app.get("/")
def root():
    return {"name": "Aligned Assistant API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health_payload()


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health():
    return _health_payload()


@app.get("/api/metrics")
def api_metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
