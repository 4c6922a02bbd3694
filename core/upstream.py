"""
Upstream model stream

UpstreamFramer turns raw SSE text from an OpenAI-compatible chat-completions
stream into content deltas. UpstreamClient issues the streaming POST and
yields ContentFragment objects in arrival order.

Record format (one per line):
    data: {"choices":[{"delta":{"content":"..."}}]}
    data: [DONE]
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

import httpx

from core.config import UpstreamConfig
from core.errors import RelayError, UpstreamConnectionError, UpstreamEnvelopeError
from core.message import build_chat_request

logger = logging.getLogger("lingo.upstream")

RECORD_PREFIX = "data:"
SENTINEL = "[DONE]"


@dataclass(frozen=True)
class ContentFragment:
    """One arrival unit of model text; seq counts from 0 per request."""
    seq: int
    text: str


def _record_payload(line: str) -> Optional[str]:
    """Payload of a data record, or None for blank lines, comments and other fields."""
    stripped = line.strip()
    if not stripped.startswith(RECORD_PREFIX):
        return None
    return stripped[len(RECORD_PREFIX):].strip()


class UpstreamFramer:
    """
    Incremental splitter for the upstream record stream.

    Partial lines are kept until their newline arrives. A record whose
    envelope does not decode is held back and joined with the next line,
    since the only benign cause is a line break inside the envelope. Blank
    lines do not end the wait; a following record that decodes on its own
    does, and the held record is dropped. More than
    ``max_undecodable_records`` failures in a row is treated as a lost stream.
    """

    def __init__(self, max_undecodable_records: int = 16, on_error: Optional[Callable[[RelayError], None]] = None):
        self.max_undecodable_records = max_undecodable_records
        self._on_error = on_error
        self._buffer = ""
        self._pending = ""
        self._failures = 0
        self.records = 0
        self.done = False

    def feed(self, text: str) -> List[str]:
        """Consume newly read text and return the content deltas it completes."""
        out: List[str] = []
        if self.done:
            return out
        self._buffer += text
        while not self.done:
            nl = self._buffer.find("\n")
            if nl == -1:
                break
            line = self._buffer[:nl].rstrip("\r")
            self._buffer = self._buffer[nl + 1:]
            self._handle_line(line, out)
        return out

    def flush(self) -> List[str]:
        """Source closed without a sentinel: settle whatever is still buffered."""
        out: List[str] = []
        if not self.done and self._buffer.strip():
            line, self._buffer = self._buffer.rstrip("\r"), ""
            self._handle_line(line, out)
        if self._pending:
            self._drop_pending("undecodable record dropped at end of stream")
        self.done = True
        return out

    def _report(self, error: RelayError) -> None:
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.warning(f"[UPSTREAM] {error}")

    def _handle_line(self, line: str, out: List[str]) -> None:
        payload = _record_payload(line)
        if self._pending:
            if not line.strip():
                return
            if payload == SENTINEL:
                self._drop_pending("undecodable record dropped at end of stream")
                self.done = True
                return
            joined = self._pending + "\n" + line
            ok, result = _loads(joined)
            if not ok and payload:
                # a new record started: it stands on its own, the held one is lost
                ok, alone = _loads(payload)
                if ok:
                    self._drop_pending("undecodable record dropped before the next record")
                    self._accept(alone, payload, out)
                    return
            if not ok:
                self._reject(joined, result)
                return
            self._pending = ""
            self._accept(result, joined, out)
            return

        if not payload:
            return
        if payload == SENTINEL:
            self.done = True
            return
        ok, result = _loads(payload)
        if not ok:
            self._reject(payload, result)
            return
        self._accept(result, payload, out)

    def _drop_pending(self, message: str) -> None:
        self._report(UpstreamEnvelopeError(message, self._pending, self._failures))
        self._pending = ""

    def _reject(self, payload: str, reason: str) -> None:
        self._failures += 1
        if self._failures > self.max_undecodable_records:
            raise UpstreamConnectionError(
                f"upstream stream desynchronized after {self._failures} undecodable records"
            )
        self._report(UpstreamEnvelopeError(f"undecodable record re-buffered ({reason})", payload, self._failures))
        self._pending = payload

    def _accept(self, envelope, payload: str, out: List[str]) -> None:
        self._failures = 0
        self.records += 1
        if isinstance(envelope, dict) and envelope.get("error"):
            error = envelope["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamConnectionError(f"upstream reported an error: {message}")
        try:
            content = envelope["choices"][0].get("delta", {}).get("content")
        except (KeyError, IndexError, TypeError, AttributeError):
            self._report(UpstreamEnvelopeError("record without choices[0].delta skipped", payload))
            return
        # role-only and finish chunks carry no content
        if isinstance(content, str) and content:
            out.append(content)


def _loads(payload: str):
    """(True, envelope) or (False, decoder message)."""
    try:
        return True, json.loads(payload, strict=False)
    except json.JSONDecodeError as e:
        return False, e.msg


class UpstreamClient:
    """Streams one chat completion and yields its content fragments."""

    def __init__(self, http_client: httpx.AsyncClient, settings: UpstreamConfig, api_key: str = ""):
        self.http_client = http_client
        self.settings = settings
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream_fragments(
        self,
        question: str,
        request_id: str = "",
        on_error: Optional[Callable[[RelayError], None]] = None,
    ) -> AsyncIterator[ContentFragment]:
        """
        POST the request and yield content fragments until the sentinel.

        Raises:
            UpstreamConnectionError: non-2xx status, transport failure, an
                error envelope, or a stream that never resynchronizes.
        """
        body = build_chat_request(question, self.settings)
        framer = UpstreamFramer(self.settings.max_undecodable_records, on_error)
        timeout = httpx.Timeout(self.settings.read_timeout, connect=self.settings.connect_timeout)
        start_time = time.time()
        seq = 0

        logger.info(f"[UPSTREAM] [req_{request_id}] POST {self.settings.endpoint} model={self.settings.model}")
        try:
            async with self.http_client.stream(
                "POST",
                self.settings.endpoint,
                headers=self._headers(),
                json=body,
                timeout=timeout,
            ) as r:
                if not r.is_success:
                    error_text = await r.aread()
                    raise UpstreamConnectionError(
                        f"Upstream Error {r.status_code}: {error_text.decode('utf-8', errors='replace')[:200]}",
                        status_code=r.status_code,
                    )

                async for text in r.aiter_text():
                    for content in framer.feed(text):
                        yield ContentFragment(seq, content)
                        seq += 1
                    if framer.done:
                        break
                else:
                    logger.warning(f"[UPSTREAM] [req_{request_id}] source closed without {SENTINEL}")
                    for content in framer.flush():
                        yield ContentFragment(seq, content)
                        seq += 1
        except httpx.HTTPError as e:
            raise UpstreamConnectionError(f"{type(e).__name__}: {str(e)[:200]}") from e

        logger.info(
            f"[UPSTREAM] [req_{request_id}] stream finished: {framer.records} records, "
            f"{seq} fragments, {time.time() - start_time:.2f}s"
        )
