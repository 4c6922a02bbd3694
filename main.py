import logging
import os
import uuid
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from core.config import ConfigManager
from core.errors import log_reporter
from core.relay import relay_stream
from core.synthesis import SpeechSynthesizer
from core.upstream import UpstreamClient

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("lingo")

# ---------- Configuration ----------
# Credentials come from the environment, everything else from LINGO_CONFIG (YAML)
config_manager = ConfigManager(os.getenv("LINGO_CONFIG", "config.yaml"))

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------- Lifespan Event Handler ----------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared HTTP client and the upstream/synthesis clients"""
    upstream_settings = config_manager.upstream
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(upstream_settings.read_timeout, connect=upstream_settings.connect_timeout),
        limits=httpx.Limits(max_keepalive_connections=50, max_connections=100),
    )
    app.state.http_client = http_client
    app.state.upstream = UpstreamClient(http_client, upstream_settings, config_manager.upstream_api_key)
    app.state.synthesizer = SpeechSynthesizer(http_client, config_manager.synthesis, config_manager.synthesis_api_key)

    if not config_manager.upstream_api_key:
        logger.warning("[SYSTEM] UPSTREAM_API_KEY is not set, upstream requests are sent without credentials")
    if not config_manager.synthesis_api_key:
        logger.warning("[SYSTEM] SYNTHESIS_API_KEY is not set, speech requests are sent without credentials")
    logger.info(f"[SYSTEM] upstream: {upstream_settings.endpoint} ({upstream_settings.model})")
    logger.info(f"[SYSTEM] synthesis: {config_manager.synthesis.endpoint} ({config_manager.synthesis.model}/{config_manager.synthesis.voice})")
    logger.info("[SYSTEM] stream endpoint: /stream?question=...")

    yield

    await http_client.aclose()
    logger.info("[SYSTEM] HTTP client closed")


app = FastAPI(title="Lingo Example Sentence Stream", lifespan=lifespan)

frontend_origin = config_manager.server.frontend_origin.strip()
if config_manager.server.allow_all_origins and not frontend_origin:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
elif frontend_origin:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ---------- Dependencies ----------
def get_upstream_client(request: Request) -> UpstreamClient:
    return request.app.state.upstream


def get_synthesizer(request: Request) -> SpeechSynthesizer:
    return request.app.state.synthesizer


@app.get("/health")
async def health_check():
    """Liveness probe"""
    return {"status": "ok"}


@app.get("/stream")
async def stream(
    question: str = Query(..., min_length=1, description="Topic for the example sentences"),
    upstream: UpstreamClient = Depends(get_upstream_client),
    synthesizer: SpeechSynthesizer = Depends(get_synthesizer),
):
    """Stream example sentences for a topic, with audio for each English sentence"""
    request_id = str(uuid.uuid4())[:6]
    question_preview = question[:200] + "...(truncated)" if len(question) > 200 else question
    logger.info(f"[STREAM] [req_{request_id}] question: {question_preview}")

    reporter = log_reporter(f"[STREAM] [req_{request_id}]")
    frames = relay_stream(
        upstream.stream_fragments(question, request_id, on_error=reporter),
        synthesizer.synthesize,
        config_manager.stream,
        request_id=request_id,
        max_concurrency=config_manager.synthesis.max_concurrency,
        on_error=reporter,
    )
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    """Global 404"""
    return JSONResponse(status_code=404, content={"detail": "Not Found"})


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", str(config_manager.server.port)))
    uvicorn.run(app, host="0.0.0.0", port=port)
