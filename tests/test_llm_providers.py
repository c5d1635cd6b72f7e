from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest
from openai import AsyncOpenAI

from pairbot.adapters.llm import GeminiProvider, LLMProvider, OpenAIProvider, build_api_base, build_llm_provider
from pairbot.core.config import Settings
from pairbot.core.errors import UpstreamError
from pairbot.core.http import ResilientHTTPClient


@pytest.mark.parametrize(
    "base,provider,expected",
    [
        ("https://api.openai.com", "openai", "https://api.openai.com/v1"),
        ("https://generativelanguage.googleapis.com", "gemini", "https://generativelanguage.googleapis.com/v1beta"),
        ("https://proxy.example.com/v1", "openai", "https://proxy.example.com/v1"),
        ("https://proxy.example.com/v1beta", "gemini", "https://proxy.example.com/v1beta"),
        ("https://proxy.example.com/api/", "openai", "https://proxy.example.com/api"),
        ("https://proxy.example.com/custom/path#", "gemini", "https://proxy.example.com/custom/path"),
    ],
)
def test_build_api_base(base: str, provider: str, expected: str) -> None:
    assert build_api_base(base, provider) == expected


def _gemini(handler) -> tuple[GeminiProvider, ResilientHTTPClient]:
    http = ResilientHTTPClient(retries=0)
    http._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = GeminiProvider(api_key="g-key", model="gemini-2.5-flash", http=http)
    return provider, http


@pytest.mark.asyncio
async def test_gemini_complete_splits_thoughts() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {
                            "parts": [
                                {"text": "thinking about it", "thought": True},
                                {"text": '{"isAnalysisRequest": false}'},
                            ]
                        }
                    }
                ],
                "usageMetadata": {"totalTokenCount": 42},
            },
        )

    provider, http = _gemini(handler)
    reply = await provider.complete(
        [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
        temperature=0.1,
        max_tokens=500,
    )
    await http.close()

    assert reply.content == '{"isAnalysisRequest": false}'
    assert reply.thoughts == "thinking about it"
    assert reply.total_tokens == 42
    assert seen["url"].endswith("/v1beta/models/gemini-2.5-flash:generateContent")
    assert seen["key"] == "g-key"
    assert seen["body"]["systemInstruction"] == {"parts": [{"text": "be brief"}]}
    assert seen["body"]["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
    assert seen["body"]["generationConfig"]["maxOutputTokens"] == 500
    assert seen["body"]["generationConfig"]["thinkingConfig"]["includeThoughts"] is True


@pytest.mark.asyncio
async def test_gemini_stream_yields_text_parts() -> None:
    events = [
        {"candidates": [{"content": {"parts": [{"text": "plan", "thought": True}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "Part one "}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "[SEGMENT_COMPLETE]"}]}, "finishReason": "STOP"}]},
        {"candidates": [{"content": {"parts": [{"text": "after finish"}]}}]},
    ]
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events)

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params.get("alt") == "sse"
        assert request.url.path.endswith(":streamGenerateContent")
        return httpx.Response(200, text="data: {broken\n\n" + body, headers={"content-type": "text/event-stream"})

    provider, http = _gemini(handler)
    chunks = [c async for c in provider.stream([{"role": "user", "content": "go"}])]
    await http.close()

    assert chunks == ["Part one ", "[SEGMENT_COMPLETE]"]


@pytest.mark.asyncio
async def test_gemini_stream_http_error_is_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(403, text="API key invalid")

    provider, http = _gemini(handler)
    with pytest.raises(UpstreamError) as excinfo:
        async for _ in provider.stream([{"role": "user", "content": "go"}]):
            pass
    await http.close()

    assert excinfo.value.status_code == 403


def _openai(handler) -> OpenAIProvider:
    provider = OpenAIProvider(api_key="sk-test", model="gpt-test")
    provider.client = AsyncOpenAI(
        api_key="sk-test",
        base_url=build_api_base("https://api.openai.com", "openai"),
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return provider


@pytest.mark.asyncio
async def test_openai_complete() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert request.url.path == "/v1/chat/completions"
        assert payload["model"] == "router-model"
        assert payload["temperature"] == 0.1
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "object": "chat.completion",
                "created": 0,
                "model": "router-model",
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": ' {"isAnalysisRequest": true} '},
                        "finish_reason": "stop",
                    }
                ],
                "usage": {"prompt_tokens": 5, "completion_tokens": 5, "total_tokens": 10},
            },
        )

    reply = await _openai(handler).complete([{"role": "user", "content": "btc"}], model="router-model")

    assert reply.content == '{"isAnalysisRequest": true}'
    assert reply.total_tokens == 10


@pytest.mark.asyncio
async def test_openai_stream_reads_deltas() -> None:
    def chunk(content: str | None, finish: str | None = None) -> str:
        delta = {} if content is None else {"content": content}
        data = {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 0,
            "model": "gpt-test",
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish}],
        }
        return f"data: {json.dumps(data)}\n\n"

    body = chunk("Part one ") + chunk("[ANALYSIS_COMPLETE]") + chunk(None, "stop") + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    chunks = [c async for c in _openai(handler).stream([{"role": "user", "content": "go"}])]

    assert chunks == ["Part one ", "[ANALYSIS_COMPLETE]"]


@pytest.mark.asyncio
async def test_openai_error_is_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(401, json={"error": {"message": "bad key", "type": "invalid_request_error"}})

    with pytest.raises(UpstreamError):
        await _openai(handler).complete([{"role": "user", "content": "btc"}])


def test_provider_selected_from_settings() -> None:
    http = ResilientHTTPClient()
    gemini = build_llm_provider(Settings(_env_file=None, AI_PROVIDER="gemini", AI_API_KEY="k", AI_MODEL="gemini-2.5-pro"), http)
    openai = build_llm_provider(Settings(_env_file=None, AI_PROVIDER="openai", AI_API_KEY="k"), http)

    assert isinstance(gemini, GeminiProvider)
    assert gemini.name == "gemini"
    assert isinstance(openai, OpenAIProvider)
    assert openai.name == "openai"


class _ChunkStream:
    def __init__(self, texts: list[str]) -> None:
        self.texts = texts
        self.closed = False

    async def __aenter__(self) -> "_ChunkStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for text in self.texts:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


@pytest.mark.asyncio
async def test_openai_stream_released_when_consumer_stops_early() -> None:
    upstream = _ChunkStream(["first ", "[ANALYSIS_COMPLETE]", "never read"])

    async def create(**kwargs):
        assert kwargs["stream"] is True
        return upstream

    provider = OpenAIProvider(api_key="sk-test", model="gpt-test")
    provider.client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    stream = provider.stream([{"role": "user", "content": "go"}])
    assert await stream.__anext__() == "first "
    await stream.aclose()

    assert upstream.closed is True


def test_provider_contract_is_structural() -> None:
    with pytest.raises(TypeError):
        LLMProvider()  # type: ignore[misc]
