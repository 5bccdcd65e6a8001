"""
Intent Classifier - LLM adapter for intent classification.

This module is a PARSER ADAPTER between:
- A customer utterance (unstructured input)
- A ClassifiedIntent (validated, grounded in live catalog vocabulary)

DESIGN PRINCIPLES:
- The vocabulary (categories, product types, attribute values) is fetched
  from the ToolProvider on every call, concurrently, before the LLM call
- Prompt is external and immutable (loaded from file, pure substitution)
- LLM output is UNTRUSTED: parsed, then validated against the IntentType
  enum, numeric ranges, and the live vocabulary
- Classification is BEST-EFFORT: any failure degrades to the `unknown`
  intent with empty params. classify() never raises.

This file does NOT:
- Decide what to do with the intent (that's the dispatcher)
- Count off-topic turns (that's the patience limiter)
- Retry with modified prompts
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from voice_agent.config import MODEL_ID, MODEL_TIMEOUT_SECONDS
from voice_agent.models.intent import ClassifiedIntent, IntentType, Vocabulary
from voice_agent.services.attribute_mapper import ATTRIBUTE_RESPONSE_KEYS, AttributeMapper
from voice_agent.services.llm_service import LLMError, call_claude
from voice_agent.services.tool_provider_client import ToolProviderClient, ToolProviderError

PROMPT_TEMPLATE_PATH = Path(__file__).parent.parent / "prompts" / "intent_classification.txt"

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS (internal; classify() converts them into results)
# =============================================================================

class ClassificationError(Exception):
    """Base exception for classification failures."""
    pass


class VocabularyFetchError(ClassificationError):
    """Could not fetch the live vocabulary from the ToolProvider."""
    pass


class JSONParseError(ClassificationError):
    """LLM response was not a JSON object."""
    pass


class IntentSchemaError(ClassificationError):
    """LLM response did not satisfy the intent schema or the vocabulary."""
    pass


# =============================================================================
# RESULT TYPE
# =============================================================================

@dataclass(frozen=True)
class ClassificationResult:
    """
    Result of a classification.

    `intent` is always set: on failure it is the `unknown` intent with
    empty params and `error` describes what went wrong.
    """
    success: bool
    intent: ClassifiedIntent
    vocabulary: Optional[Vocabulary] = None
    error: Optional[Dict[str, Any]] = None
    duration_ms: int = 0


def unknown_intent(reasoning: str = "") -> ClassifiedIntent:
    return ClassifiedIntent(intent=IntentType.UNKNOWN, confidence=0.0, params={}, reasoning=reasoning)


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _load_prompt_template() -> str:
    """Load prompt template from file. Raises if file missing."""
    if not PROMPT_TEMPLATE_PATH.exists():
        raise FileNotFoundError(f"Prompt template not found: {PROMPT_TEMPLATE_PATH}")
    return PROMPT_TEMPLATE_PATH.read_text(encoding="utf-8")


def _build_prompt(transcript: str, vocabulary: Vocabulary, template: str) -> str:
    """
    Inject runtime values into the prompt template.

    Uses simple string replacement instead of .format() to avoid
    conflicts with JSON curly braces in the template.
    """
    result = template.replace("{query}", transcript)
    for name in ("categories", "product_types", "colors", "genders", "seasons", "usages"):
        result = result.replace("{" + name + "}", json.dumps(vocabulary.values_for(name)))
    return result


def _parse_json_response(raw_response: str) -> Dict[str, Any]:
    """
    Parse raw LLM response as a JSON object.

    Handles common LLM quirks:
    - Leading/trailing whitespace
    - Markdown code blocks (```json ... ```)
    - Prose around the JSON object
    """
    text = raw_response.strip()

    if text.startswith("```"):
        lines = text.split("\n")
        if lines[-1].strip() == "```":
            lines = lines[1:-1]
        else:
            lines = lines[1:]
        text = "\n".join(lines).strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", text)
        if not match:
            raise JSONParseError("No JSON object found in LLM response")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise JSONParseError(f"Invalid JSON from LLM: {e}") from e

    if not isinstance(parsed, dict):
        raise JSONParseError(f"Expected JSON object, got {type(parsed).__name__}")

    return parsed


def _canonical(value: Any, allowed: list, label: str) -> str:
    """Match a value case-insensitively against a vocabulary list."""
    if not isinstance(value, str):
        raise IntentSchemaError(f"{label} must be a string, got {value!r}")
    lookup = {v.lower(): v for v in allowed}
    canonical = lookup.get(value.strip().lower())
    if canonical is None:
        raise IntentSchemaError(f"{label} '{value}' is not in the catalog vocabulary")
    return canonical


# =============================================================================
# ADAPTER
# =============================================================================

class IntentClassifier:
    """
    Classifies transcripts into a ClassifiedIntent.

    Usage:
        classifier = IntentClassifier(tool_provider, mapper)
        result = await classifier.classify("do you have product 12345 in stock?")
        result.intent.intent   # IntentType.STOCK
    """

    def __init__(
        self,
        tool_provider: ToolProviderClient,
        attribute_mapper: AttributeMapper,
        model: str = MODEL_ID,
        api_key: Optional[str] = None,
        timeout: float = MODEL_TIMEOUT_SECONDS,
    ):
        self.tool_provider = tool_provider
        self.attribute_mapper = attribute_mapper
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    async def fetch_vocabulary(self) -> Vocabulary:
        """Fetch categories, attributes and product types concurrently."""
        try:
            categories, attributes, product_types = await asyncio.gather(
                self.tool_provider.get_categories(),
                self.tool_provider.get_attributes(),
                self.tool_provider.get_product_types(),
            )
        except ToolProviderError as e:
            raise VocabularyFetchError(f"Vocabulary fetch failed: {e}") from e

        vocabulary: Dict[str, Any] = {
            "categories": [str(c) for c in categories],
            "product_types": sorted(
                {str(row["type"]) for row in product_types if isinstance(row, dict) and row.get("type")}
            ),
        }
        for key, values in attributes.items():
            field_name = ATTRIBUTE_RESPONSE_KEYS.get(key)
            if field_name and isinstance(values, list):
                vocabulary[field_name] = [str(v) for v in values]
        try:
            return Vocabulary(**vocabulary)
        except ValidationError as e:
            raise VocabularyFetchError(f"Vocabulary payload rejected: {e}") from e

    def validate(self, raw: Dict[str, Any], vocabulary: Vocabulary) -> ClassifiedIntent:
        """
        Validate a raw classifier dict.

        Raises:
            IntentSchemaError: shape, range, or vocabulary violation
        """
        try:
            intent = ClassifiedIntent.model_validate(raw)
        except ValidationError as e:
            raise IntentSchemaError(f"Classifier output failed schema validation: {e}") from e

        params = dict(intent.params)

        if "category" in params and vocabulary.categories:
            params["category"] = _canonical(params["category"], vocabulary.categories, "category")

        attributes = params.get("attributes")
        if attributes:
            checked = {}
            for key, value in attributes.items():
                field_name = self.attribute_mapper.resolve(key)
                if field_name is None or "price" in str(key).lower():
                    checked[key] = value
                    continue
                allowed = vocabulary.values_for(self.attribute_mapper.vocabulary_source(field_name))
                checked[key] = _canonical(value, allowed, f"attributes.{key}") if allowed else value
            params["attributes"] = checked

        return intent.model_copy(update={"params": params})

    async def classify(self, transcript: Optional[str]) -> ClassificationResult:
        """
        Classify a transcript.

        This method NEVER raises. All errors are captured and returned
        as a ClassificationResult carrying the `unknown` intent.
        """
        start_time = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - start_time) * 1000)

        def _failure(error: Exception, error_code: str, vocabulary: Optional[Vocabulary] = None) -> ClassificationResult:
            logger.warning(
                f"Classification degraded to unknown ({error_code}): {error}",
                extra={"transcript": transcript, "error_code": error_code},
            )
            return ClassificationResult(
                success=False,
                intent=unknown_intent(),
                vocabulary=vocabulary,
                error={
                    "error_code": error_code,
                    "error_type": error.__class__.__name__,
                    "message": str(error),
                },
                duration_ms=_elapsed(),
            )

        if not transcript or not transcript.strip():
            return _failure(IntentSchemaError("Empty transcript"), "EMPTY_TRANSCRIPT")

        vocabulary = None
        try:
            vocabulary = await self.fetch_vocabulary()
            prompt = _build_prompt(transcript, vocabulary, _load_prompt_template())

            logger.info("Intent classification started", extra={"transcript": transcript})
            raw_response = await call_claude(
                prompt,
                model=self.model,
                api_key=self.api_key,
                timeout=self.timeout,
            )
            logger.debug("Intent classification raw response", extra={"raw_response": raw_response})

            classified = self.validate(_parse_json_response(raw_response), vocabulary)

        except VocabularyFetchError as e:
            return _failure(e, "VOCABULARY_UNAVAILABLE")
        except LLMError as e:
            return _failure(e, "LLM_ERROR", vocabulary)
        except JSONParseError as e:
            return _failure(e, "PARSE_ERROR", vocabulary)
        except IntentSchemaError as e:
            return _failure(e, "SCHEMA_ERROR", vocabulary)
        except FileNotFoundError as e:
            return _failure(e, "CONFIG_ERROR", vocabulary)

        logger.info(
            f"Intent: {classified.intent.value} (confidence: {classified.confidence})",
            extra={"params": classified.params, "reasoning": classified.reasoning},
        )
        return ClassificationResult(
            success=True,
            intent=classified,
            vocabulary=vocabulary,
            duration_ms=_elapsed(),
        )
