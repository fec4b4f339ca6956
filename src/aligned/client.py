"""Python consumer for the assistant streams.

Posts a request, feeds the body to the matching demultiplexer as it arrives,
and reports through callbacks. Non-2xx responses raise the error class the
server mapped them from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

import logging
import re
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import (
    AssistantError,
    AuthError,
    NotFoundError,
    PipelineTimeoutError,
    QuotaExceededError,
    UpstreamModelError,
    ValidationError,
)
from .framing import NDJSON_MEDIA_TYPE, TEXT_MEDIA_TYPE, demultiplexer_for

logger = logging.getLogger(__name__)

_LIMIT_RE = re.compile(r"\((\d+) queries per day\)")

_STATUS_ERRORS: Dict[int, Type[AssistantError]] = {
    400: ValidationError,
    401: AuthError,
    404: NotFoundError,
    500: UpstreamModelError,
    504: PipelineTimeoutError,
}


@dataclass
class StreamResult:
    text: str = ""
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    chunks: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(total=1, connect=1, read=0, status=0, allowed_methods=frozenset(["POST"]))
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class AssistantStreamClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        envelope: bool = False,
        timeout: tuple[float, float] = (3.0, 30.0),
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.envelope = envelope
        self._timeout = timeout
        self._session = session or _build_session()

    def _raise_for_status(self, resp: requests.Response) -> None:
        if resp.status_code < 400:
            return
        message = resp.text
        if resp.status_code == 429:
            retry_after = int(resp.headers.get("Retry-After") or 1)
            match = _LIMIT_RE.search(message)
            raise QuotaExceededError(int(match.group(1)) if match else 0, retry_after, stage="quota")
        cls = _STATUS_ERRORS.get(resp.status_code, AssistantError)
        raise cls(message, stage="http")

    def _stream(
        self,
        path: str,
        body: Dict[str, Any],
        on_text: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_error: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> StreamResult:
        result = StreamResult()

        def _text(chunk: str) -> None:
            result.chunks.append(chunk)
            if on_text:
                on_text(chunk)

        def _metadata(record: Dict[str, Any]) -> None:
            result.metadata = record
            if on_complete:
                on_complete(record)

        def _error(record: Dict[str, Any]) -> None:
            result.error = record
            logger.warning("assistant_stream_error", extra={"stage": record.get("stage"), "err": record.get("error")})
            if on_error:
                on_error(record)

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": NDJSON_MEDIA_TYPE if self.envelope else TEXT_MEDIA_TYPE,
        }
        with self._session.post(
            f"{self.base_url}{path}", json=body, headers=headers, timeout=self._timeout, stream=True
        ) as resp:
            self._raise_for_status(resp)
            demux = demultiplexer_for(resp.headers.get("content-type"), _text, _metadata, _error)
            for chunk in resp.iter_content(chunk_size=None):
                if chunk:
                    demux.feed(chunk)
            demux.close()
        result.text = "".join(result.chunks)
        return result

    def ask(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        history: Optional[List[Dict[str, str]]] = None,
        **callbacks: Any,
    ) -> StreamResult:
        body = {"message": message, "context": context or {"page": "other"}, "history": history or []}
        return self._stream("/assistant", body, **callbacks)

    def mention(self, question_id: str, message: str, **callbacks: Any) -> StreamResult:
        body = {"message": message, "context": {"page": "question", "questionId": question_id}, "history": []}
        return self._stream("/assistant/comments", body, **callbacks)
