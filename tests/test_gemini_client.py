import asyncio

import httpx
import pytest

from conftest import TEST_API_KEY, FakeGemini
from gemini_relay.config import AppSettings
from gemini_relay.errors import ConfigurationError, UpstreamError
from gemini_relay.gemini_client import GeminiClient
from gemini_relay.streaming_utils import openai_stream_generator

PAYLOAD = {"contents": [{"role": "user", "parts": [{"text": "hi"}]}]}
CHUNK = b'data: {"candidates":[{"content":{"parts":[{"text":"Hi"}]}}]}\n\n'


def _client(fake, **settings_kwargs):
    settings_kwargs.setdefault("gemini_api_key", TEST_API_KEY)
    return GeminiClient(AppSettings(**settings_kwargs), transport=httpx.MockTransport(fake.handler))


def test_build_url_quotes_model_and_omits_key():
    client = GeminiClient(AppSettings(gemini_api_key=TEST_API_KEY))
    assert client.build_url("gemini-pro", stream=False).endswith("/v1beta/models/gemini-pro:generateContent")
    assert client.build_url("a/b", stream=True).endswith("/models/a%2Fb:streamGenerateContent")
    assert TEST_API_KEY not in client.build_url("gemini-pro", stream=True)


def test_missing_api_key_raises_before_any_request():
    fake = FakeGemini()
    client = GeminiClient(AppSettings(), transport=httpx.MockTransport(fake.handler))

    with pytest.raises(ConfigurationError):
        asyncio.run(client.generate_content("gemini-pro", PAYLOAD))
    with pytest.raises(ConfigurationError):
        asyncio.run(client.stream_generate_content("gemini-pro", PAYLOAD))
    assert fake.requests == []


def test_stream_error_status_raises_upstream_error():
    fake = FakeGemini()
    fake.status_code = 429
    fake.error_text = "quota exceeded"

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(_client(fake).stream_generate_content("gemini-pro", PAYLOAD))
    assert exc_info.value.status_code == 429
    assert exc_info.value.to_dict()["details"] == "quota exceeded"


def test_stream_can_be_closed_without_iterating():
    fake = FakeGemini()
    fake.stream_chunks = [CHUNK]

    async def open_and_close():
        stream = await _client(fake).stream_generate_content("gemini-pro", PAYLOAD)
        assert not stream.is_closed
        await stream.aclose()
        await stream.aclose()
        return stream

    stream = asyncio.run(open_and_close())
    assert stream.is_closed
    assert stream.response.is_closed
    assert len(fake.requests) == 1


def test_stream_is_closed_after_translation_finishes():
    fake = FakeGemini()
    fake.stream_chunks = [CHUNK]

    async def translate():
        stream = await _client(fake).stream_generate_content("gemini-pro", PAYLOAD)
        events = [event async for event in openai_stream_generator(stream, "gemini-pro")]
        return stream, events

    stream, events = asyncio.run(translate())
    assert events[-1] == "data: [DONE]\n\n"
    assert len(events) == 2
    assert stream.is_closed
    assert stream.response.is_closed
