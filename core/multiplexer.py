"""
Outbound event stream

Every client-visible message is an OutputFrame. Text frames (from the
dispatcher) and audio frames (from finished synthesis tasks) are appended to
one asyncio queue as complete frames, and ``frames()`` drains that queue into
SSE text. The stream ends with exactly one terminal frame: the end marker
once the input is exhausted and no synthesis task is outstanding, or an
error frame if the upstream failed.
"""
import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, AsyncIterator

from util.streaming_parser import StructuralPath

logger = logging.getLogger("lingo.multiplexer")

DATA = "data"
END = "end"
ERROR = "error"


@dataclass(frozen=True)
class OutputFrame:
    kind: str
    payload: Any = None
    source: str = "text"

    @classmethod
    def data(cls, path: StructuralPath, delta: Any, source: str = "text") -> "OutputFrame":
        return cls(DATA, {"uri": path.uri, "delta": delta}, source)

    @classmethod
    def end(cls) -> "OutputFrame":
        return cls(END, source="control")

    @classmethod
    def error(cls, message: str) -> "OutputFrame":
        return cls(ERROR, message, source="control")

    @property
    def terminal(self) -> bool:
        return self.kind in (END, ERROR)

    def encode(self) -> str:
        if self.kind == END:
            return "event: end\ndata: [DONE]\n\n"
        if self.kind == ERROR:
            return f"data: {json.dumps({'error': {'message': self.payload}}, ensure_ascii=False)}\n\n"
        return f"data: {json.dumps(self.payload, ensure_ascii=False)}\n\n"


class OutputMultiplexer:
    """Single ordered outbound channel shared by the text and audio flows."""

    def __init__(self, request_id: str = ""):
        self.request_id = request_id
        self._queue: "asyncio.Queue[OutputFrame]" = asyncio.Queue()
        self._closed = False
        self.counts: Counter = Counter()

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: OutputFrame) -> bool:
        """Append one complete frame; frames after the terminal one are dropped."""
        if self._closed:
            logger.debug(f"[STREAM] [req_{self.request_id}] {frame.source} frame after close dropped")
            return False
        self._queue.put_nowait(frame)
        self.counts[frame.source] += 1
        return True

    async def finish(self, orchestrator) -> None:
        """Input exhausted: wait until every synthesis task settled, then end the stream."""
        await orchestrator.settle_all()
        self._terminate(OutputFrame.end())

    def fail(self, message: str) -> None:
        """Upstream failed: one error frame, no waiting for pending tasks."""
        self._terminate(OutputFrame.error(message))

    def _terminate(self, frame: OutputFrame) -> None:
        if self._closed:
            return
        self._queue.put_nowait(frame)
        self._closed = True

    async def frames(self) -> AsyncIterator[str]:
        """Encoded frames in queue order, up to and including the terminal frame."""
        while True:
            frame = await self._queue.get()
            yield frame.encode()
            if frame.terminal:
                return
