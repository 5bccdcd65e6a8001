"""
Pipeline Errors - Centralized failure taxonomy.

Every failure the pipeline can hit is classified into one FailureKind.
Stages never let these escape to the caller: they are caught at the
stage boundary and recorded on the request state as a PipelineFailure,
alongside a user-facing fallback message.

Purpose:
- Clean, structured logs
- Predictable HTTP behaviour
- Explicit codes for monitoring/alerting

Each failure has:
- kind: one of the FailureKind codes
- stage: the pipeline stage that produced it
- message: internal description (never spoken to the user)
- to_dict(): structured output for API responses
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(str, Enum):
    """
    Canonical failure codes.

    TRANSIENT_UNAVAILABLE and MALFORMED are downgraded to an apology.
    USER_INPUT_MISSING produces a clarifying question instead of a failure,
    and is listed here for logging only.
    LIMIT_EXCEEDED is the patience cutoff marker.
    """
    TRANSIENT_UNAVAILABLE = "TRANSIENT_UNAVAILABLE"
    MALFORMED = "MALFORMED"
    USER_INPUT_MISSING = "USER_INPUT_MISSING"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    UNHANDLED = "UNHANDLED"


@dataclass
class PipelineFailure:
    """
    Structured terminal-error marker.

    Once set on a request, no further tool calls happen, but the
    fallback response is still returned (and synthesized when possible).
    """
    kind: FailureKind
    stage: str                                  # Where the pipeline stopped
    error_type: str                             # Exception class name or marker
    message: str = ""                           # Internal description
    details: Optional[Dict[str, Any]] = None    # Additional context

    @property
    def is_critical(self) -> bool:
        """Critical failures end the pipeline without synthesis."""
        return self.stage == "health_check"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "stage": self.stage,
            "error_type": self.error_type,
            "message": self.message,
            "details": self.details or {},
        }


class MalformedResultError(Exception):
    """
    A dependency answered, but with data we cannot interpret.

    Raised by the dispatcher when a tool result is not the JSON shape
    the tool contract promises.
    """

    def __init__(self, message: str, raw: Optional[str] = None):
        self.raw = raw
        super().__init__(message)


# ============================================================================
# USER-FACING FALLBACK MESSAGES
# ============================================================================

GENERIC_APOLOGY = (
    "I'm sorry, I encountered an error while processing your request. "
    "Please try again."
)

TOOL_PROVIDER_UNAVAILABLE_MESSAGE = (
    "I'm sorry, our product service is temporarily unavailable. "
    "Please try again in a moment."
)

SPEECH_NOT_CONFIGURED_MESSAGE = (
    "I'm sorry, voice responses are not configured right now. "
    "Please try again later."
)

TRANSCRIPTION_FAILED_MESSAGE = (
    "I'm sorry, I couldn't process the audio. Could you please try again?"
)


def failure_from_exception(
    error: Exception,
    stage: str,
    kind: FailureKind = FailureKind.UNHANDLED,
    **details: Any,
) -> PipelineFailure:
    """Build a PipelineFailure from a caught exception."""
    return PipelineFailure(
        kind=kind,
        stage=stage,
        error_type=error.__class__.__name__,
        message=str(error),
        details=details or None,
    )
