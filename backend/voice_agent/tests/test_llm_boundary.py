from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from voice_agent.services.llm_service import (
    EmptyResponseError,
    LLMCallError,
    LLMTimeoutError,
    call_claude,
)


# Mock response structure for anthropic
class MockContent:
    def __init__(self, text):
        self.text = text


class MockResponse:
    def __init__(self, *texts):
        self.content = [MockContent(t) for t in texts]


def patch_client(mocker, create):
    client = MagicMock()
    client.messages.create = create
    client.__aenter__.return_value = client
    return mocker.patch("voice_agent.services.llm_service.anthropic.AsyncAnthropic", return_value=client)


@pytest.mark.asyncio
async def test_returns_text_without_retries(mocker):
    create = AsyncMock(return_value=MockResponse('{"intent": "general"}'))
    client_cls = patch_client(mocker, create)

    assert await call_claude("prompt", api_key="k", timeout=3) == '{"intent": "general"}'
    assert client_cls.call_args.kwargs["max_retries"] == 0
    assert create.call_args.kwargs["temperature"] == 0.0


@pytest.mark.asyncio
async def test_timeout_is_typed(mocker):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    patch_client(mocker, AsyncMock(side_effect=anthropic.APITimeoutError(request=request)))

    with pytest.raises(LLMTimeoutError):
        await call_claude("prompt", api_key="k")


@pytest.mark.asyncio
async def test_api_error_is_typed(mocker):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    patch_client(mocker, AsyncMock(side_effect=anthropic.APIConnectionError(request=request)))

    with pytest.raises(LLMCallError):
        await call_claude("prompt", api_key="k")


@pytest.mark.asyncio
async def test_empty_content(mocker):
    patch_client(mocker, AsyncMock(return_value=MockResponse()))

    with pytest.raises(EmptyResponseError):
        await call_claude("prompt", api_key="k")


@pytest.mark.asyncio
async def test_client_is_closed_after_call(mocker):
    create = AsyncMock(return_value=MockResponse('{"intent": "stock"}'))
    client = patch_client(mocker, create).return_value

    await call_claude("prompt", api_key="k")
    client.__aexit__.assert_awaited_once()

    create.side_effect = anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com"))
    with pytest.raises(LLMCallError):
        await call_claude("prompt", api_key="k")
    assert client.__aexit__.await_count == 2
