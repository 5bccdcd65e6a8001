import asyncio
import json
import time
from unittest.mock import MagicMock

import pytest
import redis
from fastapi.testclient import TestClient

from voice_agent.main import _run_turn, app, app_state, check_tool_provider
from voice_agent.pipeline.session_store import RedisSessionStore
from voice_agent.services.attribute_mapper import AttributeMapError
from voice_agent.services.dispatcher import GREETING_MESSAGE
from voice_agent.services.patience_limiter import PATIENCE_LIMIT_MESSAGE
from voice_agent.services.pipeline_errors import TOOL_PROVIDER_UNAVAILABLE_MESSAGE
from voice_agent.services.tool_provider_client import ToolProviderConnectionError

from conftest import FakeSpeech, FakeToolProvider

client = TestClient(app)


def llm_answer(intent, params=None):
    return json.dumps({"intent": intent, "confidence": 0.9, "params": params or {}})


@pytest.fixture
def session_store(mocker):
    redis_client = MagicMock()
    redis_client.ping.side_effect = redis.ConnectionError("refused")
    mocker.patch("voice_agent.pipeline.session_store.redis.from_url", return_value=redis_client)
    return RedisSessionStore()


@pytest.fixture
def install(make_pipeline, session_store):
    def _install(tool_provider=None, speech=None):
        app_state.pipeline = make_pipeline(tool_provider, speech)
        app_state.session_store = session_store
        return app_state.pipeline
    return _install


def test_root():
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["service"] == "voice-agent"


def test_health_check():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "voice-agent"}


def test_text_endpoint(install, mock_claude):
    install(FakeToolProvider(tools={"query_stock": {"inStock": True, "quantity": 3}}))
    mock_claude.return_value = llm_answer("stock", {"productId": "12345"})

    response = client.post("/text", json={"text": "do you have product 12345 in stock?"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["intent"] == "stock"
    assert body["response_text"] == "Yes, product 12345 is in stock. We have 3 units available."
    assert body["response_audio"]
    assert body["audio_mime_type"] == "audio/mpeg"
    assert "debug" not in body


def test_debug_flag(install, mock_claude):
    install()
    mock_claude.return_value = llm_answer("categories")

    body = client.post("/text?debug=true", json={"text": "categories?"}).json()

    assert body["debug"]["tool_name"] == "get_categories"
    assert body["debug"]["stages"][0] == "health_check"


def test_blank_text_rejected(install):
    install()
    assert client.post("/text", json={"text": ""}).status_code == 422
    assert client.post("/text", json={"text": "   "}).status_code == 400


def test_voice_endpoint(install, mock_claude):
    speech = FakeSpeech(transcript="hello there")
    install(speech=speech)
    mock_claude.return_value = llm_answer("general")

    response = client.post(
        "/voice",
        files={"audio": ("clip.webm", b"\x1a\x45\xdf\xa3webm", "audio/webm")},
        data={"session_id": "voice-session"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["transcript"] == "hello there"
    assert body["response_text"] == GREETING_MESSAGE
    assert speech.transcribed == [b"\x1a\x45\xdf\xa3webm"]


def test_empty_audio_rejected(install):
    install()
    response = client.post("/voice", files={"audio": ("clip.webm", b"", "audio/webm")})
    assert response.status_code == 400


def test_critical_health_failure_is_503(install, mock_claude):
    install(FakeToolProvider(reachable=False))

    response = client.post("/text", json={"text": "black shirts"})

    assert response.status_code == 503
    body = response.json()
    assert body["response_text"] == TOOL_PROVIDER_UNAVAILABLE_MESSAGE
    assert body["error"]["kind"] == "TRANSIENT_UNAVAILABLE"


def test_session_counter_persists_between_turns(install, mock_claude):
    install()
    app_state.pipeline.patience.threshold = 2
    mock_claude.return_value = llm_answer("general")

    first = client.post("/text", json={"text": "hi", "session_id": "s-1"}).json()
    second = client.post("/text", json={"text": "hi again", "session_id": "s-1"}).json()

    assert first["off_topic_count"] == 1
    assert first["response_text"] == GREETING_MESSAGE
    assert second["off_topic_count"] == 2
    assert second["response_text"] == PATIENCE_LIMIT_MESSAGE
    assert second["error"]["kind"] == "LIMIT_EXCEEDED"

    client.delete("/sessions/s-1")
    third = client.post("/text", json={"text": "hey", "session_id": "s-1"}).json()
    assert third["off_topic_count"] == 1


def test_voice_counter_from_form_without_session(install, mock_claude):
    install()
    mock_claude.return_value = llm_answer("general")

    response = client.post(
        "/voice",
        files={"audio": ("clip.webm", b"\x1a\x45\xdf\xa3webm", "audio/webm")},
        data={"off_topic_count": "3"},
    )

    assert response.status_code == 200
    assert response.json()["off_topic_count"] == 4


@pytest.mark.asyncio
async def test_session_store_does_not_block_event_loop(install, mock_claude, session_store, mocker):
    install()
    mocker.patch.object(session_store, "load_count", side_effect=lambda session_id: time.sleep(0.3) or 0)
    done = asyncio.Event()
    gaps = []

    async def ticker():
        last = time.monotonic()
        while not done.is_set():
            await asyncio.sleep(0.02)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    await asyncio.sleep(0)
    await _run_turn(session_id="slow", off_topic_count=0, debug=False, text="hi")
    done.set()
    await task

    assert gaps
    assert max(gaps) < 0.2


@pytest.mark.asyncio
async def test_concurrent_turns_on_one_session_keep_every_increment(install, mock_claude, session_store):
    install()
    mock_claude.return_value = llm_answer("general")

    await asyncio.gather(*[
        _run_turn(session_id="shared", off_topic_count=0, debug=False, text=f"hi {i}")
        for i in range(3)
    ])

    assert session_store.load_count("shared") == 3


def test_counter_from_body_without_session(install, mock_claude):
    install()
    mock_claude.return_value = llm_answer("unknown")

    body = client.post("/text", json={"text": "???", "off_topic_count": 4}).json()

    assert body["off_topic_count"] == 5


def test_pipeline_crash_is_structured_500(install, mocker):
    pipeline = install()
    mocker.patch.object(pipeline, "run", side_effect=RuntimeError("boom"))

    response = client.post("/text", json={"text": "hello"})

    assert response.status_code == 500
    assert response.json()["error"]["kind"] == "UNHANDLED"


# =============================================================================
# STARTUP CHECK
# =============================================================================

@pytest.mark.asyncio
async def test_startup_check_passes(make_pipeline):
    await check_tool_provider(make_pipeline())


@pytest.mark.asyncio
async def test_startup_check_mismatch_raises(make_pipeline):
    tool_provider = FakeToolProvider(tools={"get_attributes": {"colors": ["Black"]}})
    with pytest.raises(AttributeMapError):
        await check_tool_provider(make_pipeline(tool_provider))


@pytest.mark.asyncio
async def test_startup_check_tolerates_unreachable(make_pipeline, mocker):
    tool_provider = FakeToolProvider()
    mocker.patch.object(tool_provider, "rpc", side_effect=ToolProviderConnectionError("refused"))
    await check_tool_provider(make_pipeline(tool_provider))
