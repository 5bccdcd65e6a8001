import base64
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from voice_agent.models.intent import IntentType
from voice_agent.services.pipeline_errors import PipelineFailure

AUDIO_MIME_TYPE = "audio/mpeg"


@dataclass
class HealthStatus:
    catalog_reachable: Optional[bool] = None    # None when no catalog endpoint is configured
    tool_reachable: bool = False
    speech_configured: bool = False
    speech_reachable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "catalog_reachable": self.catalog_reachable,
            "tool_reachable": self.tool_reachable,
            "speech_configured": self.speech_configured,
            "speech_reachable": self.speech_reachable,
        }


@dataclass
class RequestState:
    """Per-utterance state threaded through every pipeline stage."""

    # Input
    audio: Optional[bytes] = None
    audio_filename: str = "audio.webm"
    transcript: Optional[str] = None

    # Stage outputs
    health: Optional[HealthStatus] = None
    intent: IntentType = IntentType.UNKNOWN
    intent_params: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    reasoning: Optional[str] = None
    off_topic_count: int = 0
    patience_level: Optional[str] = None
    tool_name: Optional[str] = None
    tool_result: Optional[str] = None
    response_text: Optional[str] = None
    response_audio: Optional[bytes] = None

    # Terminal error marker
    failure: Optional[PipelineFailure] = None

    # Metadata
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stages_visited: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.failure is None and bool(self.response_text)

    @property
    def cutoff(self) -> bool:
        return self.patience_level == "cutoff"

    def fail(self, failure: PipelineFailure, response_text: str) -> None:
        """Set the terminal marker together with the fallback message."""
        self.failure = failure
        self.response_text = response_text

    def to_dict(self, include_debug: bool = False) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        result = {
            "request_id": self.request_id,
            "success": self.success,
            "intent": self.intent.value,
            "transcript": self.transcript,
            "response_text": self.response_text,
            "response_audio": (
                base64.b64encode(self.response_audio).decode("ascii")
                if self.response_audio
                else None
            ),
            "audio_mime_type": AUDIO_MIME_TYPE if self.response_audio else None,
            "off_topic_count": self.off_topic_count,
            "error": self.failure.to_dict() if self.failure else None,
            "duration_ms": self.duration_ms,
        }
        if include_debug:
            result["debug"] = {
                "health": self.health.to_dict() if self.health else None,
                "intent_params": self.intent_params,
                "confidence": self.confidence,
                "reasoning": self.reasoning,
                "patience_level": self.patience_level,
                "tool_name": self.tool_name,
                "tool_result": self.tool_result,
                "stages": self.stages_visited,
                "warnings": self.warnings,
            }
        return result
