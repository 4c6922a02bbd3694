"""
Request relay: upstream fragments in, SSE frames out.

    fragments -> IncrementalJSONParser -> EventDispatcher -+-> OutputMultiplexer
                                                           +-> SynthesisOrchestrator -> OutputMultiplexer

The upstream loop runs in its own task so audio frames can be written while
text is still arriving. Parsing and dispatch are synchronous; the only
suspension points are the next upstream read and the synthesis tasks.
"""
import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

from core.config import StreamConfig
from core.dispatcher import build_dispatcher
from core.errors import RelayError, UpstreamConnectionError, log_reporter
from core.multiplexer import OutputFrame, OutputMultiplexer
from core.synthesis import SynthesisOrchestrator
from core.upstream import ContentFragment
from util.streaming_parser import IncrementalJSONParser, ParseEvent, StringDelta

logger = logging.getLogger("lingo.relay")

UPSTREAM_ERROR_MESSAGE = "Error fetching from upstream model"


async def relay_stream(
    fragments: AsyncIterator[ContentFragment],
    synthesize: Callable[[str], Awaitable[str]],
    settings: StreamConfig,
    request_id: str = "",
    max_concurrency: int = 0,
    on_error: Optional[Callable[[RelayError], None]] = None,
) -> AsyncIterator[str]:
    """
    Relay one model response as encoded SSE frames.

    Args:
        fragments: content fragments of the model answer, in arrival order
        synthesize: text -> base64 audio coroutine function
        settings: rendered/trigger patterns and the audio field name
        request_id: short id used in log lines
        max_concurrency: synthesis cap, 0 for unbounded
        on_error: side channel for repairs, envelope and synthesis errors

    Yields:
        Complete SSE frames; the last one is always the end marker or a
        single error frame.
    """
    reporter = on_error or log_reporter(f"[req_{request_id}]")
    start_time = time.time()

    mux = OutputMultiplexer(request_id)
    orchestrator = SynthesisOrchestrator(
        synthesize,
        mux.send,
        audio_field=settings.audio_field,
        max_concurrency=max_concurrency,
        on_error=reporter,
        request_id=request_id,
    )
    parser = IncrementalJSONParser(on_error=reporter)

    def render(event: ParseEvent) -> None:
        delta = event.delta if isinstance(event, StringDelta) else event.value
        mux.send(OutputFrame.data(event.path, delta))

    dispatcher = build_dispatcher(
        settings.rendered_fields,
        settings.audio_trigger_field,
        on_rendered=render,
        on_audio_trigger=orchestrator.on_resolved,
    )
    stats = {"fragments": 0, "events": 0}

    async def produce() -> None:
        try:
            async for fragment in fragments:
                stats["fragments"] += 1
                stats["events"] += dispatcher.dispatch_all(parser.feed(fragment.text))
            stats["events"] += dispatcher.dispatch_all(parser.close())
        except UpstreamConnectionError as e:
            logger.error(f"[STREAM] [req_{request_id}] upstream failed: {e}")
            mux.fail(UPSTREAM_ERROR_MESSAGE)
            return
        except Exception as e:
            logger.exception(f"[STREAM] [req_{request_id}] relay error ({type(e).__name__}): {e}")
            mux.fail(f"Relay error: {type(e).__name__}")
            return

        if not parser.done:
            logger.warning(f"[STREAM] [req_{request_id}] upstream produced no JSON document")
        await mux.finish(orchestrator)

    producer = asyncio.create_task(produce())
    try:
        async for frame in mux.frames():
            yield frame
    finally:
        if not producer.done():
            # client went away: stop reading upstream, let synthesis finish unobserved
            producer.cancel()
            orchestrator.discard_results()
            logger.info(f"[STREAM] [req_{request_id}] client disconnected")
        logger.info(
            f"[STREAM] [req_{request_id}] finished: {stats['fragments']} fragments, {stats['events']} events, "
            f"{parser.repairs} repairs, audio {orchestrator.succeeded}/{orchestrator.started} ok "
            f"({orchestrator.failed} failed), frames text={mux.counts['text']} audio={mux.counts['audio']}, "
            f"{time.time() - start_time:.2f}s"
        )
