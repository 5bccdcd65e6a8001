"""
Retail Voice Agent FastAPI Application.

This is the main entry point for the voice agent API.
It delegates every utterance to the VoiceAgentPipeline.

DESIGN PRINCIPLE:
- main.py is a THIN HTTP LAYER
- All business logic lives in the pipeline orchestrator
- main.py only handles: HTTP concerns, request validation, session
  counters, response formatting
"""

import logging
import colorlog
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from voice_agent.config import PipelineConfig
from voice_agent.pipeline.request_state import RequestState
from voice_agent.pipeline.session_store import RedisSessionStore
from voice_agent.services.attribute_mapper import AttributeMapError, exposed_vocabulary_sources
from voice_agent.services.pipeline_errors import GENERIC_APOLOGY, FailureKind
from voice_agent.services.pipeline_orchestrator import VoiceAgentPipeline
from voice_agent.services.tool_provider_client import ToolProviderError

# Load environment variables
load_dotenv()

# =============================================================================
# CONFIGURATION
# =============================================================================

SERVICE_NAME = "voice-agent"
SERVICE_VERSION = "1.0.0"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Configure logging

def setup_global_color_logging():
    # Configure root logger
    logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Create console handler
    handler = logging.StreamHandler()
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(levelname)-8s%(reset)s %(name)s: %(message)s",
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'bold_red',
        }
    ))
    root_logger.addHandler(handler)

setup_global_color_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """Application state container for dependencies."""
    pipeline: VoiceAgentPipeline
    session_store: RedisSessionStore


app_state = AppState()


async def check_tool_provider(pipeline: VoiceAgentPipeline) -> None:
    """
    Open the JSON-RPC session and check the attribute map against the
    vocabulary the ToolProvider exposes.

    Raises:
        AttributeMapError: ToolProvider reachable but the map disagrees with it
    """
    tool_provider = pipeline.tool_provider
    try:
        await tool_provider.initialize()
        tools = await tool_provider.list_tools()
        logger.info(f"ToolProvider tools: {[t.get('name') for t in tools]}")
        attributes = await tool_provider.get_attributes()
        product_types = await tool_provider.get_product_types()
    except ToolProviderError as e:
        logger.warning(f"ToolProvider unreachable at startup, attribute map not validated: {e}")
        return

    pipeline.attribute_mapper.validate_against(
        exposed_vocabulary_sources(attributes, has_product_types=bool(product_types))
    )


# =============================================================================
# LIFESPAN (Startup/Shutdown)
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, cleanup on shutdown."""
    # Startup
    logger.info("Starting Voice Agent API...")

    config = PipelineConfig.from_env()
    app_state.pipeline = VoiceAgentPipeline(config)
    app_state.session_store = RedisSessionStore()

    try:
        await check_tool_provider(app_state.pipeline)
    except AttributeMapError as e:
        logger.error(f"Attribute map does not match the ToolProvider: {e}")
        raise

    logger.info("Voice Agent API started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Voice Agent API...")


# =============================================================================
# FASTAPI APP
# =============================================================================

app = FastAPI(
    title="Retail Voice Agent API",
    description="Voice and text customer assistant for the retail catalog",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class TextRequest(BaseModel):
    """Request model for a typed utterance."""
    text: str = Field(
        ...,
        min_length=1,
        max_length=1000,
        description="Customer utterance",
        json_schema_extra={"example": "Do you have product 12345 in stock?"}
    )
    session_id: Optional[str] = Field(None, max_length=128)
    off_topic_count: int = Field(0, ge=0)


# =============================================================================
# HELPER: MAP PIPELINE STATE TO HTTP STATUS
# =============================================================================

def _get_http_status_for_state(state: RequestState) -> int:
    """
    Map the final pipeline state to an HTTP status code.

    - Critical health failure -> 503 (dependency down, nothing was answered)
    - Everything else -> 200 (the body carries success/error)
    """
    if state.failure and state.failure.is_critical:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_200_OK


async def _run_turn(
    *,
    session_id: Optional[str],
    off_topic_count: int,
    debug: bool,
    audio: Optional[bytes] = None,
    text: Optional[str] = None,
    audio_filename: str = "audio.webm",
) -> JSONResponse:
    """Load the session counter, run the pipeline, save the counter."""
    if session_id:
        off_topic_count = await run_in_threadpool(app_state.session_store.load_count, session_id)
    loaded_count = off_topic_count

    try:
        state = await app_state.pipeline.run(
            audio=audio,
            text=text,
            off_topic_count=off_topic_count,
            audio_filename=audio_filename,
        )
    except Exception as e:
        logger.exception(f"Pipeline crashed: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "response_text": GENERIC_APOLOGY,
                "off_topic_count": off_topic_count,
                "error": {
                    "kind": FailureKind.UNHANDLED.value,
                    "error_type": e.__class__.__name__,
                    "message": str(e),
                },
            },
        )

    if session_id:
        await run_in_threadpool(
            app_state.session_store.add_count, session_id, state.off_topic_count - loaded_count
        )

    http_status = _get_http_status_for_state(state)
    if state.failure:
        logger.warning(
            f"Pipeline finished with {state.failure.kind.value} at stage '{state.failure.stage}'"
        )

    return JSONResponse(content=state.to_dict(include_debug=debug), status_code=http_status)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
async def root():
    return {"status": "ok", "service": SERVICE_NAME, "version": SERVICE_VERSION}


@app.get("/health", tags=["Health"])
async def health_check():
    """Process liveness only (dependencies are probed per request)."""
    return {"status": "healthy", "service": SERVICE_NAME}


@app.post(
    "/voice",
    tags=["Agent"],
    summary="Answer a spoken utterance",
    description="Transcribe the audio, answer it, and return the reply as text and audio",
)
async def voice(
    audio: UploadFile = File(...),
    session_id: Optional[str] = Form(None),
    off_topic_count: int = Form(0, ge=0),
    debug: bool = Query(False),
):
    audio_bytes = await audio.read()
    if not audio_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Audio file is empty")

    logger.info(f"Received audio: {len(audio_bytes)} bytes ({audio.content_type})")
    return await _run_turn(
        session_id=session_id,
        off_topic_count=off_topic_count,
        debug=debug,
        audio=audio_bytes,
        audio_filename=audio.filename or "audio.webm",
    )


@app.post(
    "/text",
    tags=["Agent"],
    summary="Answer a typed utterance",
    description="Same pipeline as /voice without transcription",
)
async def text(request: TextRequest, debug: bool = Query(False)):
    utterance = request.text.strip()
    if not utterance:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Text is empty")

    logger.info(f"Received text: {utterance}")
    return await _run_turn(
        session_id=request.session_id,
        off_topic_count=request.off_topic_count,
        debug=debug,
        text=utterance,
    )


@app.delete("/sessions/{session_id}", tags=["Agent"])
async def reset_session(session_id: str):
    """Forget a session's off-topic counter."""
    await run_in_threadpool(app_state.session_store.delete, session_id)
    return {"session_id": session_id, "off_topic_count": 0}


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "5000"))

    uvicorn.run(app, host=host, port=port)
