"""
Voice Agent configuration.

Loads service endpoints, credentials and pipeline limits from environment
variables (a local .env file is honoured) and gathers them into a single
PipelineConfig that is passed explicitly into the pipeline constructor.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# =============================================================================
# CONFIGURATION (Explicit, loaded from environment)
# =============================================================================

TOOL_PROVIDER_URL = os.getenv("MCP_SERVER_URL", "http://mcp:4000")
CATALOG_BACKEND_URL = os.getenv("BACKEND_URL", "http://backend:3001")

ELEVENLABS_API_URL = os.getenv("ELEVENLABS_API_URL", "https://api.elevenlabs.io/v1")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8N2MJ1")
ELEVENLABS_TTS_MODEL = os.getenv("ELEVENLABS_TTS_MODEL", "eleven_multilingual_v2")
ELEVENLABS_STT_MODEL = os.getenv("ELEVENLABS_STT_MODEL", "scribe_v1")

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
MODEL_ID = os.getenv("ANTHROPIC_MODEL_ID", "claude-sonnet-4-5")
MODEL_TIMEOUT_SECONDS = float(os.getenv("MODEL_TIMEOUT_SECONDS", "30.0"))

# Pipeline guardrails
PATIENCE_THRESHOLD = int(os.getenv("PATIENCE_THRESHOLD", "10"))
HEALTH_CHECK_TIMEOUT_MS = int(os.getenv("HEALTH_CHECK_TIMEOUT_MS", "5000"))
TOOL_REQUEST_TIMEOUT_SECONDS = float(os.getenv("TOOL_REQUEST_TIMEOUT", "30.0"))
DEFAULT_SEARCH_LIMIT = 20
POLICY_SUMMARY_CHARS = 800


@dataclass(frozen=True)
class PipelineConfig:
    """Everything the pipeline needs to reach its collaborators."""

    tool_provider_endpoint: str = TOOL_PROVIDER_URL
    speech_service_endpoint: str = ELEVENLABS_API_URL
    classifier_model_name: str = MODEL_ID
    patience_threshold: int = PATIENCE_THRESHOLD
    health_check_timeout_ms: int = HEALTH_CHECK_TIMEOUT_MS

    # Catalog backend is probed for observability only (empty disables it)
    catalog_backend_endpoint: str = CATALOG_BACKEND_URL

    speech_api_key: str = ELEVENLABS_API_KEY
    speech_voice_id: str = ELEVENLABS_VOICE_ID
    speech_tts_model: str = ELEVENLABS_TTS_MODEL
    speech_stt_model: str = ELEVENLABS_STT_MODEL

    classifier_api_key: str = ANTHROPIC_API_KEY
    classifier_timeout_seconds: float = MODEL_TIMEOUT_SECONDS

    tool_request_timeout_seconds: float = TOOL_REQUEST_TIMEOUT_SECONDS
    default_search_limit: int = DEFAULT_SEARCH_LIMIT
    policy_summary_chars: int = POLICY_SUMMARY_CHARS

    def __post_init__(self):
        if self.patience_threshold < 1:
            raise ValueError("patience_threshold must be at least 1")
        if self.health_check_timeout_ms <= 0:
            raise ValueError("health_check_timeout_ms must be positive")

    @property
    def health_check_timeout_seconds(self) -> float:
        return self.health_check_timeout_ms / 1000

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from the current environment (re-read on every call)."""
        return cls(
            tool_provider_endpoint=os.getenv("MCP_SERVER_URL", TOOL_PROVIDER_URL),
            speech_service_endpoint=os.getenv("ELEVENLABS_API_URL", ELEVENLABS_API_URL),
            classifier_model_name=os.getenv("ANTHROPIC_MODEL_ID", MODEL_ID),
            patience_threshold=int(os.getenv("PATIENCE_THRESHOLD", str(PATIENCE_THRESHOLD))),
            health_check_timeout_ms=int(os.getenv("HEALTH_CHECK_TIMEOUT_MS", str(HEALTH_CHECK_TIMEOUT_MS))),
            catalog_backend_endpoint=os.getenv("BACKEND_URL", CATALOG_BACKEND_URL),
            speech_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
            speech_voice_id=os.getenv("ELEVENLABS_VOICE_ID", ELEVENLABS_VOICE_ID),
            speech_tts_model=os.getenv("ELEVENLABS_TTS_MODEL", ELEVENLABS_TTS_MODEL),
            speech_stt_model=os.getenv("ELEVENLABS_STT_MODEL", ELEVENLABS_STT_MODEL),
            classifier_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            classifier_timeout_seconds=float(os.getenv("MODEL_TIMEOUT_SECONDS", str(MODEL_TIMEOUT_SECONDS))),
            tool_request_timeout_seconds=float(os.getenv("TOOL_REQUEST_TIMEOUT", str(TOOL_REQUEST_TIMEOUT_SECONDS))),
        )
