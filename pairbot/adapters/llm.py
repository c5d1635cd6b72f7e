from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from openai import AsyncOpenAI, OpenAIError

from pairbot.core.config import Settings
from pairbot.core.errors import UpstreamError
from pairbot.core.http import ResilientHTTPClient

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = {"openai": "v1", "gemini": "v1beta"}


def build_api_base(base_url: str, provider: str) -> str:
    """Resolve the API root for a provider.

    - trailing ``#``: use the address verbatim
    - trailing ``/``: no version segment is added
    - already versioned (``/v1``, ``/v1beta``): unchanged
    - otherwise the provider default version is appended
    """
    base = (base_url or "").strip()
    if base.endswith("#"):
        return base[:-1]
    if base.endswith("/"):
        return base.rstrip("/")
    if "/v1" in base:
        return base
    version = DEFAULT_API_VERSION.get(provider)
    return f"{base}/{version}" if version else base


@dataclass
class LLMReply:
    content: str
    thoughts: str | None = None
    total_tokens: int | None = None


class LLMProvider(Protocol):
    """Provider-agnostic contract used by the classifier and the analysis stream."""

    name: str
    model: str

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.1,
        max_tokens: int = 500,
        model: str | None = None,
    ) -> LLMReply: ...

    def stream(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        model: str | None = None,
    ) -> AsyncIterator[str]: ...


@dataclass
class _ProviderConfig:
    api_key: str
    model: str
    base_url: str = ""
    timeout: float = 120.0


@dataclass
class OpenAIProvider(_ProviderConfig):
    name: str = field(default="openai", init=False)

    def __post_init__(self) -> None:
        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=build_api_base(self.base_url or "https://api.openai.com", "openai"),
            timeout=self.timeout,
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.1,
        max_tokens: int = 500,
        model: str | None = None,
    ) -> LLMReply:
        try:
            resp = await self.client.chat.completions.create(
                model=model or self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OpenAIError as exc:
            raise UpstreamError(f"OpenAI request failed: {exc}") from exc

        content = ""
        if resp.choices:
            content = resp.choices[0].message.content or ""
        usage = getattr(resp, "usage", None)
        return LLMReply(
            content=content.strip(),
            total_tokens=getattr(usage, "total_tokens", None),
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        try:
            chunks = await self.client.chat.completions.create(
                model=model or self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
            async with chunks:
                async for chunk in chunks:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta.content
                    if delta:
                        yield delta
        except OpenAIError as exc:
            raise UpstreamError(f"OpenAI stream failed: {exc}") from exc


@dataclass
class GeminiProvider(_ProviderConfig):
    http: ResilientHTTPClient | None = None
    thinking_budget: int = -1
    name: str = field(default="gemini", init=False)

    def _url(self, model: str, action: str) -> str:
        root = build_api_base(self.base_url or "https://generativelanguage.googleapis.com", "gemini")
        return f"{root}/models/{model}:{action}"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def _body(self, messages: list[dict[str, str]], temperature: float, max_tokens: int, model: str) -> dict[str, Any]:
        contents: list[dict[str, Any]] = []
        system_parts: list[dict[str, str]] = []
        for msg in messages:
            role = str(msg.get("role", "user"))
            part = {"text": str(msg.get("content", ""))}
            if role == "system":
                system_parts.append(part)
                continue
            contents.append({"role": "model" if role == "assistant" else "user", "parts": [part]})

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        if "2.5" in model:
            body["generationConfig"]["thinkingConfig"] = {
                "includeThoughts": True,
                "thinkingBudget": self.thinking_budget,
            }
        return body

    def _require_http(self) -> ResilientHTTPClient:
        if self.http is None:
            raise RuntimeError("GeminiProvider needs an HTTP client")
        return self.http

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.1,
        max_tokens: int = 500,
        model: str | None = None,
    ) -> LLMReply:
        use_model = model or self.model
        data = await self._require_http().post_json(
            self._url(use_model, "generateContent"),
            self._body(messages, temperature, max_tokens, use_model),
            headers=self._headers(),
            timeout=self.timeout,
            retries=1,
        )
        candidates = data.get("candidates") or []
        if not candidates:
            raise UpstreamError("Gemini returned no candidates")

        parts = (candidates[0].get("content") or {}).get("parts") or []
        content = ""
        thoughts = ""
        for part in parts:
            if part.get("thought"):
                thoughts += part.get("text", "")
            else:
                content += part.get("text", "")
        if not content and parts:
            content = parts[-1].get("text", "")

        usage = data.get("usageMetadata") or {}
        return LLMReply(
            content=content.strip(),
            thoughts=thoughts or None,
            total_tokens=usage.get("totalTokenCount"),
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        use_model = model or self.model
        async with self._require_http().stream_lines(
            "POST",
            self._url(use_model, "streamGenerateContent") + "?alt=sse",
            payload=self._body(messages, temperature, max_tokens, use_model),
            headers=self._headers(),
            timeout=self.timeout,
        ) as lines:
            async for line in lines:
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    logger.debug("gemini_stream_bad_line", extra={"event": "gemini_stream_bad_line", "error": line[:200]})
                    continue
                candidate = (data.get("candidates") or [{}])[0]
                for part in (candidate.get("content") or {}).get("parts") or []:
                    text = part.get("text")
                    if text and not part.get("thought"):
                        yield text
                if candidate.get("finishReason"):
                    return


def build_llm_provider(settings: Settings, http: ResilientHTTPClient) -> LLMProvider:
    if settings.ai_provider == "gemini":
        return GeminiProvider(
            api_key=settings.ai_api_key,
            model=settings.ai_model,
            base_url=settings.ai_base_url,
            timeout=settings.ai_request_timeout_sec,
            http=http,
        )
    return OpenAIProvider(
        api_key=settings.ai_api_key,
        model=settings.ai_model,
        base_url=settings.ai_base_url,
        timeout=settings.ai_request_timeout_sec,
    )
