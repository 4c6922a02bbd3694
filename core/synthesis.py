"""
Audio synthesis: the speech endpoint client and the task orchestrator.

SpeechSynthesizer turns text into a base64 audio payload through an
OpenAI-compatible /audio/speech endpoint.

SynthesisOrchestrator launches one synthesis task per qualifying resolved
string, keyed by its structural path, and turns each successful result into
an audio frame at the sibling path (english -> audio). Failures are reported
and produce no frame. Tasks are never cancelled by the orchestrator; when the
client goes away their results are discarded instead.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Set

import httpx

from core.config import SynthesisConfig
from core.errors import RelayError, SynthesisFailure
from core.multiplexer import OutputFrame
from util.streaming_parser import StringResolved, StructuralPath

logger = logging.getLogger("lingo.synthesis")

# Strong references for running tasks; the event loop only keeps weak ones.
_inflight: Set[asyncio.Task] = set()


class SpeechSynthesizer:
    """Client for the speech endpoint."""

    def __init__(self, http_client: httpx.AsyncClient, settings: SynthesisConfig, api_key: str = ""):
        self.http_client = http_client
        self.settings = settings
        self.api_key = api_key

    async def synthesize(self, text: str) -> str:
        """
        Synthesize ``text`` and return the audio as base64.

        Raises:
            SynthesisFailure: transport error, non-2xx status or empty body.
        """
        payload = {
            "model": self.settings.model,
            "input": text,
            "voice": self.settings.voice,
            "response_format": self.settings.response_format,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            resp = await self.http_client.post(
                self.settings.endpoint,
                json=payload,
                headers=headers,
                timeout=self.settings.timeout,
            )
        except httpx.HTTPError as e:
            raise SynthesisFailure(f"{type(e).__name__}: {str(e)[:200]}") from e

        if not resp.is_success:
            raise SynthesisFailure(f"TTS API error {resp.status_code}: {resp.text[:200]}")
        if not resp.content:
            raise SynthesisFailure("TTS API returned an empty audio body")
        return base64.b64encode(resp.content).decode()


@dataclass
class PendingTask:
    """One in-flight synthesis, keyed by the path of the string that triggered it."""
    path: StructuralPath
    text: str
    task: asyncio.Task
    created_at: float = field(default_factory=time.time)


class SynthesisOrchestrator:

    def __init__(
        self,
        synthesize: Callable[[str], Awaitable[str]],
        emit: Callable[[OutputFrame], object],
        audio_field: str = "audio",
        max_concurrency: int = 0,
        on_error: Optional[Callable[[RelayError], None]] = None,
        request_id: str = "",
    ):
        self._synthesize = synthesize
        self._emit = emit
        self.audio_field = audio_field
        self._on_error = on_error
        self.request_id = request_id
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency > 0 else None
        self._pending: Dict[StructuralPath, PendingTask] = {}
        self._triggered: Set[StructuralPath] = set()
        self._discard = False
        self.started = 0
        self.succeeded = 0
        self.failed = 0

    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def pending_paths(self):
        return list(self._pending)

    def on_resolved(self, event: StringResolved) -> Optional[PendingTask]:
        """Start synthesis for a resolved string; at most once per path."""
        path = event.path
        if path in self._triggered:
            logger.debug(f"[AUDIO] [req_{self.request_id}] {path.uri} already triggered")
            return None
        self._triggered.add(path)
        if not event.value.strip():
            logger.info(f"[AUDIO] [req_{self.request_id}] {path.uri} is blank, not synthesized")
            return None

        task = asyncio.get_running_loop().create_task(self._run(path, event.value))
        _inflight.add(task)
        task.add_done_callback(_inflight.discard)
        pending = PendingTask(path, event.value, task)
        self._pending[path] = pending
        self.started += 1
        logger.info(f"[AUDIO] [req_{self.request_id}] synthesis started for {path.uri} ({len(event.value)} chars)")
        return pending

    async def _synthesize_bounded(self, text: str) -> str:
        if self._semaphore is None:
            return await self._synthesize(text)
        async with self._semaphore:
            return await self._synthesize(text)

    async def _run(self, path: StructuralPath, text: str) -> None:
        start = time.time()
        try:
            payload = await self._synthesize_bounded(text)
        except Exception as e:
            self.failed += 1
            failure = e if isinstance(e, SynthesisFailure) else SynthesisFailure(f"{type(e).__name__}: {e}")
            failure.path = path
            self._report(failure)
        else:
            self.succeeded += 1
            if self._discard:
                logger.info(f"[AUDIO] [req_{self.request_id}] {path.uri} finished after disconnect, result discarded")
            else:
                self._emit(OutputFrame.data(path.with_last(self.audio_field), payload, source="audio"))
                logger.info(f"[AUDIO] [req_{self.request_id}] {path.uri} ready in {time.time() - start:.2f}s")
        finally:
            self._pending.pop(path, None)

    def _report(self, failure: SynthesisFailure) -> None:
        if self._on_error is not None:
            self._on_error(failure)
        else:
            logger.error(f"[AUDIO] [req_{self.request_id}] synthesis failed for {failure.path.uri}: {failure}")

    async def settle_all(self) -> None:
        """Return once every outstanding task has finished, successfully or not."""
        while self._pending:
            tasks = [pending.task for pending in self._pending.values()]
            # asyncio.wait leaves the tasks running if this coroutine is cancelled
            await asyncio.wait(tasks)

    def discard_results(self) -> None:
        """Client is gone: let running tasks finish but drop their frames."""
        self._discard = True
        if self._pending:
            logger.info(f"[AUDIO] [req_{self.request_id}] {len(self._pending)} task(s) left running, results will be discarded")
