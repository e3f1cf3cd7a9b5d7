"""Ollama local-server provider adapter."""

from __future__ import annotations

import json
import logging
from http import HTTPStatus
from typing import Any, AsyncIterator

import httpx

from devark.core.exceptions import ProviderUnavailableError

from .base import (
    CompletionOptions,
    CompletionResponse,
    ConfigField,
    ConnectionTestResult,
    LLMProvider,
    ModelInfo,
    ProviderCapabilities,
    ProviderMetadata,
    StreamChunk,
    Usage,
)
from .utils import iter_lines

logger = logging.getLogger("devark.providers.ollama")

DEFAULT_ENDPOINT = "http://localhost:11434"
PROBE_TIMEOUT = 5.0
INFERENCE_TIMEOUT = 600.0

NO_MODEL_ERROR = (
    "No model configured and no models found on Ollama server. "
    "Please install a model with: ollama pull llama3.1:8b"
)

DEFAULT_MODELS: dict[str, ModelInfo] = {
    "codellama:7b": ModelInfo(
        id="codellama:7b",
        name="CodeLlama 7B",
        description="Meta's CodeLlama 7B model optimized for code generation",
        context_length=16384,
    ),
    "deepseek-coder:6.7b": ModelInfo(
        id="deepseek-coder:6.7b",
        name="DeepSeek Coder 6.7B",
        description="DeepSeek's code-focused model with strong performance",
        context_length=16384,
    ),
    "starcoder2:7b": ModelInfo(
        id="starcoder2:7b",
        name="StarCoder2 7B",
        description="BigCode's StarCoder2 model for code tasks",
        context_length=16384,
    ),
}

METADATA = ProviderMetadata(
    id="ollama",
    display_name="Ollama",
    description="Local LLM provider via Ollama. Supports CodeLlama, DeepSeek Coder, and other models.",
    requires_auth=False,
    supports_streaming=True,
    supports_cost_tracking=False,
    config_schema={
        "endpoint": ConfigField(
            type="string",
            required=True,
            default=DEFAULT_ENDPOINT,
            description="Ollama API endpoint URL",
        ),
        "model": ConfigField(
            type="string",
            description="Model identifier (auto-detected from installed models if not specified)",
        ),
    },
)


def _model_not_found(model: str) -> str:
    return (
        f"Model '{model}' not found on Ollama server.\n\n"
        "Available models can be listed with: ollama list\n"
        f"Pull this model with: ollama pull {model}\n\n"
        "Or change the model in settings (devark.llm.providers.ollama.model)"
    )


def _usage(data: dict[str, Any]) -> Usage:
    prompt_tokens = int(data.get("prompt_eval_count") or 0)
    completion_tokens = int(data.get("eval_count") or 0)
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


class OllamaProvider(LLMProvider):
    provider_id = "ollama"
    capabilities = ProviderCapabilities(
        streaming=True,
        cost_tracking=False,
        model_listing=True,
        custom_endpoints=True,
        requires_auth=False,
    )

    def __init__(self, config: dict[str, Any]) -> None:
        super().__init__(config)
        self._endpoint = str(config.get("endpoint") or DEFAULT_ENDPOINT).rstrip("/")
        self._model: str | None = config.get("model") or None
        self._detected_model: str | None = None

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def model(self) -> str:
        return self._model or self._detected_model or ""

    async def auto_detect_model(self) -> str | None:
        if self._model or self._detected_model:
            return self.model
        try:
            models = await self.list_models()
        except ProviderUnavailableError:
            return None
        if models:
            self._detected_model = models[0].id
            logger.info(
                "Auto-detected Ollama model",
                extra={"event": "model_detected", "provider_id": self.provider_id, "model": self._detected_model},
            )
        return self._detected_model

    async def _ensure_model(self) -> str:
        detected = await self.auto_detect_model()
        if not detected:
            raise ProviderUnavailableError(self.provider_id, message=NO_MODEL_ERROR)
        return detected

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
                response = await client.get(f"{self._endpoint}/api/version")
        except httpx.HTTPError:
            return False
        return not response.is_error

    async def get_version(self) -> str | None:
        """Return the server version, or ``None`` when the server does not answer."""
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
                response = await client.get(f"{self._endpoint}/api/version")
        except httpx.HTTPError:
            return None
        if response.is_error:
            return None
        return response.json().get("version")

    async def test_connection(self) -> ConnectionTestResult:
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
                version_response = await client.get(f"{self._endpoint}/api/version")
                if version_response.is_error:
                    return ConnectionTestResult(
                        success=False,
                        error=f"HTTP {version_response.status_code}: {HTTPStatus(version_response.status_code).phrase}",
                    )
                version = version_response.json().get("version")

                tags_response = await client.get(f"{self._endpoint}/api/tags")
                models_count = 0
                if not tags_response.is_error:
                    models_count = len(tags_response.json().get("models") or [])
        except httpx.ConnectError:
            return ConnectionTestResult(
                success=False,
                error=f"Cannot connect to Ollama at {self._endpoint}. Is Ollama running?",
            )
        except httpx.TimeoutException:
            return ConnectionTestResult(
                success=False,
                error=f"Connection to Ollama timed out. Check if {self._endpoint} is accessible.",
            )
        except (httpx.HTTPError, ValueError) as exc:
            return ConnectionTestResult(success=False, error=f"Failed to connect to Ollama: {exc}")

        return ConnectionTestResult(
            success=True,
            details={"version": version, "models_available": models_count, "endpoint": self._endpoint},
        )

    async def list_models(self) -> list[ModelInfo]:
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
                response = await client.get(f"{self._endpoint}/api/tags")
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                self.provider_id, message=f"Failed to list Ollama models: {exc}"
            ) from exc
        if response.is_error:
            raise ProviderUnavailableError(
                self.provider_id,
                message=f"Failed to list Ollama models: HTTP {response.status_code}",
            )

        models: list[ModelInfo] = []
        for entry in response.json().get("models") or []:
            name = entry.get("name")
            if not name:
                continue
            curated = DEFAULT_MODELS.get(name)
            if curated:
                models.append(curated)
                continue
            details = entry.get("details") or {}
            models.append(
                ModelInfo(
                    id=name,
                    name=name,
                    description=(
                        f"{details.get('family') or 'Unknown'} model "
                        f"({details.get('parameter_size') or 'size unknown'})"
                    ),
                )
            )
        return models

    def _build_payload(self, options: CompletionOptions, model: str, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "prompt": options.prompt, "stream": stream}
        if options.system_prompt:
            payload["system"] = options.system_prompt

        generation: dict[str, Any] = {}
        if options.temperature is not None:
            generation["temperature"] = options.temperature
        if options.max_tokens is not None:
            generation["num_predict"] = options.max_tokens
        if options.stop:
            generation["stop"] = options.stop
        if generation:
            payload["options"] = generation
        return payload

    def _raise_for_status(self, response: httpx.Response, model: str) -> None:
        if response.status_code == HTTPStatus.NOT_FOUND:
            raise ProviderUnavailableError(self.provider_id, message=_model_not_found(model))
        if response.is_error:
            raise ProviderUnavailableError(
                self.provider_id,
                message=f"HTTP {response.status_code}: {HTTPStatus(response.status_code).phrase}",
            )

    async def generate_completion(self, options: CompletionOptions) -> CompletionResponse:
        model = options.model or self.model
        try:
            if not model:
                model = await self._ensure_model()
            payload = self._build_payload(options, model, stream=False)
            async with httpx.AsyncClient(timeout=INFERENCE_TIMEOUT) as client:
                response = await client.post(f"{self._endpoint}/api/generate", json=payload)
            self._raise_for_status(response, model)
            data = response.json()
        except ProviderUnavailableError as exc:
            return self._failure(f"Ollama completion failed: {exc.message}", model)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Ollama request failed",
                extra={"event": "provider_fail", "provider_id": self.provider_id, "model": model},
            )
            return self._failure(f"Ollama completion failed: {exc}", model)

        return CompletionResponse(
            text=data.get("response") or "",
            model=model,
            provider=self.provider_id,
            usage=_usage(data),
        )

    async def stream_completion(self, options: CompletionOptions) -> AsyncIterator[StreamChunk]:
        model = options.model or self.model
        try:
            if not model:
                model = await self._ensure_model()
            payload = self._build_payload(options, model, stream=True)
            async with httpx.AsyncClient(timeout=INFERENCE_TIMEOUT) as client:
                async with client.stream(
                    "POST", f"{self._endpoint}/api/generate", json=payload
                ) as response:
                    self._raise_for_status(response, model)
                    buffer = ""
                    async for text in response.aiter_text():
                        lines, buffer = iter_lines(buffer + text)
                        for line in lines:
                            chunk = self._parse_line(line, model)
                            if chunk is None:
                                continue
                            yield chunk
                            if chunk.is_complete:
                                return
                    chunk = self._parse_line(buffer, model)
                    if chunk is not None:
                        yield chunk
                        if chunk.is_complete:
                            return
        except ProviderUnavailableError as exc:
            yield self._terminal_chunk(model=model, error=f"Ollama streaming failed: {exc.message}")
            return
        except (httpx.HTTPError, ValueError) as exc:
            yield self._terminal_chunk(model=model, error=f"Ollama streaming failed: {exc}")
            return

        # Stream closed without a done line.
        yield self._terminal_chunk(model=model)

    def _parse_line(self, line: str, model: str) -> StreamChunk | None:
        if not line.strip():
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            logger.debug("Skipping malformed Ollama stream line", extra={"provider_id": self.provider_id})
            return None
        done = bool(data.get("done"))
        return StreamChunk(
            text=data.get("response") or "",
            is_complete=done,
            model=model,
            provider=self.provider_id,
            usage=_usage(data) if done else None,
        )


def create_ollama_provider(config: dict[str, Any]) -> OllamaProvider:
    return OllamaProvider(config)
