"""
Pipeline Orchestrator

RESPONSIBILITIES:
1. Receive one utterance (audio or text) plus the caller's off-topic count
2. Transcribe audio (unusable audio still gets a spoken apology)
3. Probe dependencies (END on critical failure, nothing else runs)
4. Classify intent (never fails, degrades to `unknown`)
5. Apply the patience limit (cutoff skips dispatch)
6. Dispatch to the ToolProvider and compose the reply
7. Synthesize the reply (failure is non-fatal)
8. Return the full RequestState (everything for debugging)

The pipeline is an explicit finite-state machine: a PipelineStage enum,
one handler per stage, and next_stage() deciding the transition from the
state. No stage is visited twice and no external call is retried.
"""

import logging
import time
from enum import Enum
from typing import Optional

from voice_agent.config import PipelineConfig
from voice_agent.pipeline.request_state import RequestState
from voice_agent.services.attribute_mapper import AttributeMapper
from voice_agent.services.dispatcher import Dispatcher
from voice_agent.services.health_prober import HealthProber
from voice_agent.services.intent_classifier import IntentClassifier
from voice_agent.services.patience_limiter import PATIENCE_LIMIT_MESSAGE, PatienceLimiter
from voice_agent.services.pipeline_errors import (
    GENERIC_APOLOGY,
    TRANSCRIPTION_FAILED_MESSAGE,
    FailureKind,
    PipelineFailure,
    failure_from_exception,
)
from voice_agent.services.speech_client import SpeechClient, SpeechServiceError
from voice_agent.services.tool_provider_client import ToolProviderClient


# =============================================================================
# LOGGING
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# PIPELINE STAGE ENUM
# =============================================================================

class PipelineStage(str, Enum):
    """
    Explicit stage names for tracking where the pipeline went.
    """
    TRANSCRIBE = "transcribe"
    HEALTH_CHECK = "health_check"
    CLASSIFY = "classify"
    PATIENCE_CHECK = "patience_check"
    DISPATCH = "dispatch"
    SYNTHESIZE = "synthesize"
    END = "end"


def next_stage(stage: PipelineStage, state: RequestState) -> PipelineStage:
    """
    Transition function.

    Once a failure is set, the only stages left are synthesis and END;
    a critical (health) failure goes straight to END.
    """
    if stage == PipelineStage.TRANSCRIBE:
        return PipelineStage.HEALTH_CHECK

    if stage == PipelineStage.HEALTH_CHECK:
        if state.failure and state.failure.is_critical:
            return PipelineStage.END
        if state.failure:
            return PipelineStage.SYNTHESIZE
        return PipelineStage.CLASSIFY

    if stage == PipelineStage.CLASSIFY:
        return PipelineStage.SYNTHESIZE if state.failure else PipelineStage.PATIENCE_CHECK

    if stage == PipelineStage.PATIENCE_CHECK:
        if state.cutoff or state.failure:
            return PipelineStage.SYNTHESIZE
        return PipelineStage.DISPATCH

    if stage == PipelineStage.DISPATCH:
        return PipelineStage.SYNTHESIZE

    return PipelineStage.END


# =============================================================================
# PIPELINE
# =============================================================================

class VoiceAgentPipeline:
    """
    Runs one utterance through every stage.

    Collaborators are built from the config unless injected (tests
    inject fakes).

    Usage:
        pipeline = VoiceAgentPipeline(PipelineConfig.from_env())
        state = await pipeline.run(text="what categories do you have?")
        state.response_text
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        tool_provider: Optional[ToolProviderClient] = None,
        speech: Optional[SpeechClient] = None,
        classifier: Optional[IntentClassifier] = None,
        dispatcher: Optional[Dispatcher] = None,
        health_prober: Optional[HealthProber] = None,
        patience: Optional[PatienceLimiter] = None,
        attribute_mapper: Optional[AttributeMapper] = None,
    ):
        self.config = config or PipelineConfig()
        self.tool_provider = tool_provider or ToolProviderClient(
            base_url=self.config.tool_provider_endpoint,
            timeout=self.config.tool_request_timeout_seconds,
        )
        self.speech = speech or SpeechClient(
            base_url=self.config.speech_service_endpoint,
            api_key=self.config.speech_api_key,
            voice_id=self.config.speech_voice_id,
            tts_model=self.config.speech_tts_model,
            stt_model=self.config.speech_stt_model,
        )
        self.attribute_mapper = attribute_mapper or AttributeMapper.load()
        self.classifier = classifier or IntentClassifier(
            self.tool_provider,
            self.attribute_mapper,
            model=self.config.classifier_model_name,
            api_key=self.config.classifier_api_key or None,
            timeout=self.config.classifier_timeout_seconds,
        )
        self.dispatcher = dispatcher or Dispatcher(
            self.tool_provider,
            self.attribute_mapper,
            default_search_limit=self.config.default_search_limit,
            policy_summary_chars=self.config.policy_summary_chars,
        )
        self.health_prober = health_prober or HealthProber(
            self.tool_provider,
            self.speech,
            catalog_url=self.config.catalog_backend_endpoint or None,
            timeout=self.config.health_check_timeout_seconds,
        )
        self.patience = patience or PatienceLimiter(self.config.patience_threshold)

        self._handlers = {
            PipelineStage.TRANSCRIBE: self._transcribe,
            PipelineStage.HEALTH_CHECK: self._health_check,
            PipelineStage.CLASSIFY: self._classify,
            PipelineStage.PATIENCE_CHECK: self._patience_check,
            PipelineStage.DISPATCH: self._dispatch,
            PipelineStage.SYNTHESIZE: self._synthesize,
        }

    async def run(
        self,
        *,
        audio: Optional[bytes] = None,
        text: Optional[str] = None,
        off_topic_count: int = 0,
        audio_filename: str = "audio.webm",
    ) -> RequestState:
        """
        Execute one utterance through the pipeline.

        Exactly one of `audio` / `text` is expected. Text input skips
        transcription.

        Returns:
            The final RequestState; response_text is always non-empty.
        """
        start_time = time.monotonic()
        state = RequestState(
            audio=audio,
            audio_filename=audio_filename,
            transcript=None if audio is not None else text,
            off_topic_count=max(off_topic_count, 0),
        )

        logger.info(
            f"Pipeline started ({'audio' if audio is not None else 'text'} input)",
            extra={"request_id": state.request_id},
        )

        stage = PipelineStage.TRANSCRIBE if audio is not None else PipelineStage.HEALTH_CHECK
        step = 0
        while stage != PipelineStage.END:
            step += 1
            state.stages_visited.append(stage.value)
            logger.info(f"Step {step}: {stage.value}")
            try:
                await self._handlers[stage](state)
            except Exception as e:
                # Handlers catch their own dependency errors; this is the last resort
                logger.exception(f"Unexpected error in stage {stage.value}: {e}")
                if state.failure is None:
                    state.fail(failure_from_exception(e, stage.value), GENERIC_APOLOGY)
                if stage == PipelineStage.SYNTHESIZE:
                    break
                stage = PipelineStage.SYNTHESIZE
                continue
            stage = next_stage(stage, state)

        if not state.response_text:
            state.response_text = GENERIC_APOLOGY

        state.duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            f"Pipeline completed in {state.duration_ms}ms "
            f"(intent={state.intent.value}, success={state.success})",
            extra={"request_id": state.request_id, "stages": state.stages_visited},
        )
        return state

    # -------------------------------------------------------------------------
    # Stage handlers
    # -------------------------------------------------------------------------

    async def _transcribe(self, state: RequestState) -> None:
        audio, state.audio = state.audio, None
        try:
            state.transcript = await self.speech.transcribe(audio or b"", filename=state.audio_filename)
            logger.info(f"Transcript: {state.transcript!r}")
        except SpeechServiceError as e:
            logger.error(f"Transcription failed: {e}")
            state.fail(
                failure_from_exception(e, PipelineStage.TRANSCRIBE.value, FailureKind.TRANSIENT_UNAVAILABLE),
                TRANSCRIPTION_FAILED_MESSAGE,
            )

    async def _health_check(self, state: RequestState) -> None:
        state.health = await self.health_prober.probe()

        reason = self.health_prober.critical_failure(state.health)
        if reason:
            error_type = "ToolProviderUnavailable" if not state.health.tool_reachable else "SpeechNotConfigured"
            logger.error(f"Health check failed: {error_type}")
            state.fail(
                PipelineFailure(
                    kind=FailureKind.TRANSIENT_UNAVAILABLE,
                    stage=PipelineStage.HEALTH_CHECK.value,
                    error_type=error_type,
                    message=reason,
                    details={"health": state.health.to_dict()},
                ),
                reason,
            )
            return

        if not state.health.speech_reachable:
            state.warnings.append("Speech service unreachable; answering without audio")
        if state.health.catalog_reachable is False:
            state.warnings.append("Catalog backend unreachable")

    async def _classify(self, state: RequestState) -> None:
        result = await self.classifier.classify(state.transcript)
        state.intent = result.intent.intent
        state.intent_params = dict(result.intent.params)
        state.confidence = result.intent.confidence
        state.reasoning = result.intent.reasoning
        if result.error:
            state.warnings.append(f"Classification degraded: {result.error['error_code']}")

    async def _patience_check(self, state: RequestState) -> None:
        decision = self.patience.evaluate(state.intent, state.off_topic_count)
        state.off_topic_count = decision.off_topic_count
        state.patience_level = decision.level.value

        if decision.cutoff:
            state.fail(
                PipelineFailure(
                    kind=FailureKind.LIMIT_EXCEEDED,
                    stage=PipelineStage.PATIENCE_CHECK.value,
                    error_type="PatienceLimitExceeded",
                    message=f"{decision.off_topic_count} off-topic turns (threshold {self.patience.threshold})",
                ),
                PATIENCE_LIMIT_MESSAGE,
            )

    async def _dispatch(self, state: RequestState) -> None:
        result = await self.dispatcher.dispatch(state.intent, state.intent_params)
        state.tool_name = result.tool_name
        state.tool_result = result.tool_result
        if result.failure:
            state.fail(result.failure, result.response_text)
        else:
            state.response_text = result.response_text

    async def _synthesize(self, state: RequestState) -> None:
        if not state.response_text:
            state.response_text = GENERIC_APOLOGY

        if state.health is not None and not state.health.speech_reachable:
            logger.warning("Skipping synthesis: speech service unreachable")
            return

        try:
            state.response_audio = await self.speech.synthesize(state.response_text)
            logger.info(f"Synthesized {len(state.response_audio)} bytes of audio")
        except SpeechServiceError as e:
            logger.warning(f"Synthesis failed, returning text only: {e}")
            state.warnings.append(f"Speech synthesis failed: {e}")
