import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Add backend directory to sys.path to allow imports from voice_agent
backend_path = Path(__file__).parent.parent.parent.resolve()
sys.path.append(str(backend_path))

from voice_agent.config import PipelineConfig
from voice_agent.services.attribute_mapper import AttributeMapper
from voice_agent.services.health_prober import HealthProber
from voice_agent.services.pipeline_orchestrator import VoiceAgentPipeline
from voice_agent.services.speech_client import SpeechClient, SpeechConnectionError
from voice_agent.services.tool_provider_client import ToolProviderClient, ToolProviderRPCError


CATEGORIES = ["Apparel", "Footwear", "Accessories"]
ATTRIBUTES = {
    "colors": ["Black", "Blue", "White"],
    "genders": ["Men", "Women"],
    "seasons": ["Summer", "Winter"],
    "usages": ["Casual", "Sports"],
}
PRODUCT_TYPES = [
    {"master_category": "Apparel", "article_type": "Shirts", "product_count": 12},
    {"master_category": "Accessories", "article_type": "Backpacks", "product_count": 4},
]


class ToolError:
    """A tool-level error result (isError: true)."""

    def __init__(self, text):
        self.text = text


class FakeToolProvider(ToolProviderClient):
    """
    ToolProvider with canned tool results.

    Only rpc() and ping() are replaced, so the real envelope decoding
    and typed helpers still run. Values may be text, JSON-able data,
    a ToolError, an exception instance, or a callable taking the
    tool arguments.
    """

    def __init__(self, tools=None, resources=None, reachable=True):
        super().__init__(base_url="http://tool-provider.test", timeout=1)
        self.tools = {
            "get_categories": CATEGORIES,
            "get_attributes": ATTRIBUTES,
            "get_product_types": PRODUCT_TYPES,
        }
        self.tools.update(tools or {})
        self.resources = dict(resources or {})
        self.reachable = reachable
        self.calls = []
        self.resource_reads = []

    def calls_to(self, name):
        return [args for tool, args in self.calls if tool == name]

    async def ping(self, timeout=None):
        return self.reachable

    async def rpc(self, method, params=None):
        params = params or {}
        if method == "initialize":
            return {"serverInfo": {"name": "fake"}}
        if method == "tools/list":
            return {"tools": [{"name": name} for name in self.tools]}
        if method == "resources/read":
            uri = params["uri"]
            self.resource_reads.append(uri)
            value = self.resources.get(uri)
            if value is None:
                raise ToolProviderRPCError(f"Resource not found: {uri}", code=-32002, method=method)
            if isinstance(value, Exception):
                raise value
            if callable(value):
                return value(uri)
            return {"contents": [{"uri": uri, "mimeType": "text/plain", "text": value}]}
        if method == "tools/call":
            name, arguments = params["name"], params.get("arguments", {})
            self.calls.append((name, arguments))
            if name not in self.tools:
                raise ToolProviderRPCError(f"Unknown tool: {name}", code=-32601, method=method)
            value = self.tools[name]
            if callable(value):
                value = value(arguments)
            if isinstance(value, Exception):
                raise value
            if isinstance(value, ToolError):
                return {"content": [{"type": "text", "text": value.text}], "isError": True}
            text = value if isinstance(value, str) else json.dumps(value)
            return {"content": [{"type": "text", "text": text}]}
        raise ToolProviderRPCError(f"Method not found: {method}", code=-32601, method=method)


class FakeSpeech(SpeechClient):
    def __init__(self, transcript="hello", api_key="test-key", reachable=True,
                 transcribe_error=None, synthesize_error=None):
        super().__init__(base_url="http://speech.test", api_key=api_key)
        self.transcript = transcript
        self.reachable = reachable
        self.transcribe_error = transcribe_error
        self.synthesize_error = synthesize_error
        self.transcribed = []
        self.synthesized = []

    async def ping(self, timeout=None):
        return self.reachable

    async def transcribe(self, audio, filename="audio.webm"):
        self.transcribed.append(audio)
        if self.transcribe_error:
            raise self.transcribe_error
        return self.transcript

    async def synthesize(self, text):
        self.synthesized.append(text)
        if self.synthesize_error:
            raise self.synthesize_error
        return b"ID3-fake-mpeg"


@pytest.fixture
def tool_provider():
    return FakeToolProvider()


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture(scope="session")
def attribute_mapper():
    return AttributeMapper.load()


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        catalog_backend_endpoint="",
        speech_api_key="test-key",
        patience_threshold=10,
        health_check_timeout_ms=1000,
    )


@pytest.fixture
def make_pipeline(pipeline_config, attribute_mapper):
    def _make(tool_provider=None, speech=None, config=None):
        tool_provider = tool_provider or FakeToolProvider()
        speech = speech or FakeSpeech()
        config = config or pipeline_config
        return VoiceAgentPipeline(
            config,
            tool_provider=tool_provider,
            speech=speech,
            health_prober=HealthProber(tool_provider, speech, timeout=1),
            attribute_mapper=attribute_mapper,
        )
    return _make


@pytest.fixture
def mock_claude(mocker):
    """Patch the LLM call; set .return_value to a JSON string per test."""
    return mocker.patch(
        "voice_agent.services.intent_classifier.call_claude",
        new=AsyncMock(return_value='{"intent": "unknown", "confidence": 0.1, "params": {}}'),
    )


@pytest.fixture
def speech_down_error():
    return SpeechConnectionError("speech service down")
