"""OpenRouter gateway provider adapter."""

from __future__ import annotations

import json
import logging
import math
import time
from http import HTTPStatus
from typing import Any, AsyncIterator, ClassVar

import httpx

from devark.core.exceptions import (
    AuthenticationRequiredError,
    ProviderUnavailableError,
    RateLimitExceededError,
)

from .base import (
    CompletionOptions,
    CompletionResponse,
    ConfigField,
    ConnectionTestResult,
    Cost,
    LLMProvider,
    ModelInfo,
    ProviderCapabilities,
    ProviderMetadata,
    StreamChunk,
    Usage,
)
from .rate_limiter import RateLimiter
from .utils import describe_http_error, iter_lines

logger = logging.getLogger("devark.providers.openrouter")

DEFAULT_ENDPOINT = "https://openrouter.ai/api/v1"
DEFAULT_SITE_URL = "https://github.com/devark/devark"
DEFAULT_SITE_NAME = "DevArk"

PROBE_TIMEOUT = 5.0
MODELS_TIMEOUT = 10.0
INFERENCE_TIMEOUT = 120.0

MODEL_LIMITS_TTL_SECONDS = 3600.0
DEFAULT_REQUESTED_MAX_TOKENS = 1000
FREE_TIER_MAX_TOKENS = 800
DEFAULT_MAX_COMPLETION_TOKENS = 4096
LIMIT_SAFETY_RATIO = 0.9

SUPPORTED_MODELS: list[ModelInfo] = [
    ModelInfo(
        id="anthropic/claude-3.5-sonnet",
        name="Claude 3.5 Sonnet",
        description="Anthropic's most capable model via OpenRouter",
        context_length=200000,
    ),
    ModelInfo(
        id="openai/gpt-4-turbo",
        name="GPT-4 Turbo",
        description="OpenAI's GPT-4 Turbo via OpenRouter",
        context_length=128000,
    ),
    ModelInfo(
        id="meta-llama/llama-3-70b-instruct",
        name="Llama 3 70B",
        description="Meta's Llama 3 70B via OpenRouter",
        context_length=8192,
    ),
    ModelInfo(
        id="google/gemini-pro",
        name="Gemini Pro",
        description="Google's Gemini Pro via OpenRouter",
        context_length=32768,
    ),
]

# USD per million tokens: (prompt, completion).
PRICING: dict[str, tuple[float, float]] = {
    "anthropic/claude-3.5-sonnet": (3.0, 15.0),
    "openai/gpt-4-turbo": (10.0, 30.0),
    "meta-llama/llama-3-70b-instruct": (0.9, 0.9),
    "google/gemini-pro": (0.5, 1.5),
}
DEFAULT_PRICING = (1.0, 2.0)

METADATA = ProviderMetadata(
    id="openrouter",
    display_name="OpenRouter",
    description="Access multiple LLM providers through OpenRouter's unified API",
    requires_auth=True,
    supports_streaming=True,
    supports_cost_tracking=True,
    config_schema={
        "apiKey": ConfigField(
            type="string", required=True, secret=True, description="OpenRouter API key"
        ),
        "model": ConfigField(
            type="string",
            required=True,
            description="Model identifier (e.g., anthropic/claude-3.5-sonnet)",
        ),
        "siteUrl": ConfigField(type="string", description="Your site URL for OpenRouter rankings"),
        "siteName": ConfigField(type="string", description="Your site name for OpenRouter rankings"),
    },
)


def calculate_cost(model: str, usage: Usage) -> Cost:
    prompt_price, completion_price = PRICING.get(model, DEFAULT_PRICING)
    amount = (
        usage.prompt_tokens / 1_000_000 * prompt_price
        + usage.completion_tokens / 1_000_000 * completion_price
    )
    return Cost(amount=amount, currency="USD")


def _usage(data: dict[str, Any] | None) -> Usage | None:
    if not data:
        return None
    prompt_tokens = int(data.get("prompt_tokens") or 0)
    completion_tokens = int(data.get("completion_tokens") or 0)
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=int(data.get("total_tokens") or prompt_tokens + completion_tokens),
    )


class OpenRouterProvider(LLMProvider):
    provider_id = "openrouter"
    capabilities = ProviderCapabilities(
        streaming=True,
        cost_tracking=True,
        model_listing=True,
        custom_endpoints=False,
        requires_auth=True,
    )

    # model id -> (max completion tokens, fetched at)
    _model_limits_cache: ClassVar[dict[str, tuple[int, float]]] = {}

    def __init__(self, config: dict[str, Any], clock=time.monotonic) -> None:
        super().__init__(config)
        api_key = config.get("apiKey")
        if not api_key:
            raise AuthenticationRequiredError(
                self.provider_id, message="OpenRouter API key is required"
            )
        self._api_key: str = api_key
        self._model: str = config.get("model") or ""
        self._site_url: str = config.get("siteUrl") or DEFAULT_SITE_URL
        self._site_name: str = config.get("siteName") or DEFAULT_SITE_NAME
        self._endpoint = str(config.get("endpoint") or DEFAULT_ENDPOINT).rstrip("/")
        self._clock = clock
        self.rate_limiter = RateLimiter(20, 60, "OpenRouter", clock=clock)

    @property
    def model(self) -> str:
        return self._model

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self._site_url,
            "X-Title": self._site_name,
        }

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
                response = await client.get(f"{self._endpoint}/models", headers=self._headers())
        except httpx.HTTPError:
            return False
        return not response.is_error

    async def test_connection(self) -> ConnectionTestResult:
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
                response = await client.get(f"{self._endpoint}/models", headers=self._headers())
        except httpx.TimeoutException:
            return ConnectionTestResult(
                success=False,
                error="Connection to OpenRouter timed out. Check your internet connection.",
            )
        except httpx.HTTPError as exc:
            return ConnectionTestResult(success=False, error=f"Failed to connect to OpenRouter: {exc}")

        if response.status_code == HTTPStatus.UNAUTHORIZED:
            return ConnectionTestResult(
                success=False, error="Invalid API key. Please check your OpenRouter API key."
            )
        if response.status_code == HTTPStatus.TOO_MANY_REQUESTS:
            return ConnectionTestResult(
                success=False, error="Rate limit exceeded. Please try again later."
            )
        if response.is_error:
            return ConnectionTestResult(
                success=False,
                error=f"Failed to connect to OpenRouter: {describe_http_error(response)}",
            )

        try:
            models = response.json().get("data") or []
        except ValueError:
            models = []
        return ConnectionTestResult(
            success=True,
            details={"models_available": len(models), "endpoint": self._endpoint},
        )

    async def list_models(self) -> list[ModelInfo]:
        return list(SUPPORTED_MODELS)

    async def _fetch_max_completion_tokens(self, model: str) -> int:
        cached = self._model_limits_cache.get(model)
        now = self._clock()
        if cached and now - cached[1] < MODEL_LIMITS_TTL_SECONDS:
            return cached[0]

        limit = DEFAULT_MAX_COMPLETION_TOKENS
        try:
            async with httpx.AsyncClient(timeout=MODELS_TIMEOUT) as client:
                response = await client.get(f"{self._endpoint}/models", headers=self._headers())
            if not response.is_error:
                for entry in response.json().get("data") or []:
                    if entry.get("id") != model:
                        continue
                    top_provider = entry.get("top_provider") or {}
                    limit = int(top_provider.get("max_completion_tokens") or DEFAULT_MAX_COMPLETION_TOKENS)
                    break
        except (httpx.HTTPError, ValueError):
            logger.debug(
                "Model limit lookup failed; using default",
                extra={"event": "model_limits_fallback", "provider_id": self.provider_id, "model": model},
            )
            return limit

        self._model_limits_cache[model] = (limit, now)
        return limit

    async def effective_max_tokens(self, model: str, requested: int | None) -> int:
        wanted = requested if requested is not None else DEFAULT_REQUESTED_MAX_TOKENS
        if model.endswith(":free"):
            return min(wanted, FREE_TIER_MAX_TOKENS)
        limit = await self._fetch_max_completion_tokens(model)
        return min(wanted, math.floor(limit * LIMIT_SAFETY_RATIO))

    async def _build_payload(self, options: CompletionOptions, model: str, stream: bool) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": options.prompt})

        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": await self.effective_max_tokens(model, options.max_tokens),
            "stream": stream,
        }
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.stop:
            payload["stop"] = options.stop
        return payload

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == HTTPStatus.UNAUTHORIZED:
            raise AuthenticationRequiredError(
                self.provider_id, message="Invalid API key. Please check your OpenRouter API key."
            )
        if response.status_code == HTTPStatus.TOO_MANY_REQUESTS:
            raise ProviderUnavailableError(
                self.provider_id, message="Rate limit exceeded. Please try again later."
            )
        if response.is_error:
            raise ProviderUnavailableError(self.provider_id, message=describe_http_error(response))

    async def generate_completion(self, options: CompletionOptions) -> CompletionResponse:
        model = options.model or self._model
        try:
            self.rate_limiter.throttle()
            payload = await self._build_payload(options, model, stream=False)
            async with httpx.AsyncClient(timeout=INFERENCE_TIMEOUT) as client:
                response = await client.post(
                    f"{self._endpoint}/chat/completions", json=payload, headers=self._headers()
                )
            self._raise_for_status(response)
            data = response.json()
        except RateLimitExceededError as exc:
            return self._failure(f"OpenRouter completion failed: {exc}", model)
        except ProviderUnavailableError as exc:
            logger.warning(
                "OpenRouter request rejected",
                extra={"event": "provider_fail", "provider_id": self.provider_id, "model": model},
            )
            return self._failure(f"OpenRouter completion failed: {exc.message}", model)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "OpenRouter request failed",
                extra={"event": "provider_fail", "provider_id": self.provider_id, "model": model},
            )
            return self._failure(f"OpenRouter completion failed: {exc}", model)

        choices = data.get("choices") or []
        choice = choices[0] if choices else {}
        content = ((choice.get("message") or {}).get("content")) or ""
        usage = _usage(data.get("usage"))
        response_model = data.get("model") or model

        if not content:
            if choice.get("finish_reason") == "length":
                limit = payload.get("max_tokens")
                error = (
                    f"Model {response_model} hit its output token limit "
                    f"({limit or 'unknown'} tokens). The free tier of this model may have a lower "
                    "limit. Try a different model or reduce the prompt size."
                )
            else:
                error = (
                    f"Model {response_model} returned empty response. This model may not support "
                    "this request format or may have content filtering enabled."
                )
            return CompletionResponse(
                text="", model=response_model, provider=self.provider_id, usage=usage, error=error
            )

        return CompletionResponse(
            text=content,
            model=response_model,
            provider=self.provider_id,
            usage=usage,
            cost=calculate_cost(model, usage) if usage else None,
        )

    async def stream_completion(self, options: CompletionOptions) -> AsyncIterator[StreamChunk]:
        model = options.model or self._model
        try:
            self.rate_limiter.throttle()
            payload = await self._build_payload(options, model, stream=True)
            async with httpx.AsyncClient(timeout=INFERENCE_TIMEOUT) as client:
                async with client.stream(
                    "POST",
                    f"{self._endpoint}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as response:
                    self._raise_for_status(response)
                    buffer = ""
                    async for text in response.aiter_text():
                        lines, buffer = iter_lines(buffer + text)
                        for line in lines:
                            chunk = self._parse_sse_line(line, model)
                            if chunk is None:
                                continue
                            yield chunk
                            if chunk.is_complete:
                                return
                    chunk = self._parse_sse_line(buffer, model)
                    if chunk is not None:
                        yield chunk
                        if chunk.is_complete:
                            return
        except RateLimitExceededError as exc:
            yield self._terminal_chunk(model=model, error=f"OpenRouter streaming failed: {exc}")
            return
        except ProviderUnavailableError as exc:
            yield self._terminal_chunk(model=model, error=f"OpenRouter streaming failed: {exc.message}")
            return
        except (httpx.HTTPError, ValueError) as exc:
            yield self._terminal_chunk(model=model, error=f"OpenRouter streaming failed: {exc}")
            return

        yield self._terminal_chunk(model=model)

    def _parse_sse_line(self, line: str, model: str) -> StreamChunk | None:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return self._terminal_chunk(model=model)
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            event = None
        if not isinstance(event, dict):
            logger.debug("Skipping malformed SSE line", extra={"provider_id": self.provider_id})
            return None

        choices = event.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        delta = (choice.get("delta") or {}).get("content") or ""
        if choice.get("finish_reason"):
            usage = _usage(event.get("usage"))
            return StreamChunk(
                text=delta,
                is_complete=True,
                model=model,
                provider=self.provider_id,
                usage=usage,
                cost=calculate_cost(model, usage) if usage else None,
            )
        if not delta:
            return None
        return StreamChunk(text=delta, model=model, provider=self.provider_id)


def create_openrouter_provider(config: dict[str, Any]) -> OpenRouterProvider:
    return OpenRouterProvider(config)
