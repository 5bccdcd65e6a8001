import logging

import anthropic

from voice_agent.config import ANTHROPIC_API_KEY, MODEL_ID, MODEL_TIMEOUT_SECONDS

# =============================================================================
# CONFIGURATION (Explicit, loaded from environment)
# =============================================================================

TEMPERATURE = 0.0  # Deterministic: classification is parsing, not generation
MAX_TOKENS = 1024  # Sufficient for intent JSON output

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Base exception for LLM call failures."""
    pass


class LLMCallError(LLMError):
    """LLM API call failed."""
    pass


class LLMTimeoutError(LLMError):
    """LLM call timed out."""
    pass


class EmptyResponseError(LLMError):
    """LLM returned empty response."""
    pass


async def call_claude(
    prompt: str,
    *,
    model: str = MODEL_ID,
    api_key: str | None = None,
    timeout: float = MODEL_TIMEOUT_SECONDS,
) -> str:
    """
    Call Claude once with explicit configuration.

    - Explicit model, temperature, max_tokens
    - No retries (SDK retries disabled too)
    - Returns raw text response

    Raises:
        LLMCallError: API call failed
        LLMTimeoutError: Request timed out
        EmptyResponseError: Empty response received
    """
    try:
        async with anthropic.AsyncAnthropic(
            api_key=api_key or ANTHROPIC_API_KEY or None,
            timeout=timeout,
            max_retries=0,
        ) as client:
            response = await client.messages.create(
                model=model,
                max_tokens=MAX_TOKENS,
                temperature=TEMPERATURE,
                messages=[
                    {"role": "user", "content": prompt}
                ]
            )
    except anthropic.APITimeoutError as e:
        raise LLMTimeoutError(f"LLM call timed out after {timeout}s") from e
    except anthropic.AnthropicError as e:
        # Covers APIError as well as client construction (missing key)
        raise LLMCallError(f"LLM API error: {e}") from e

    if not response.content:
        raise EmptyResponseError("LLM returned empty content array")

    text_block = response.content[0]
    if not getattr(text_block, "text", None):
        raise EmptyResponseError("LLM returned empty text")

    return text_block.text
