"""Provider contract and the records exchanged with providers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncIterator, Literal

from pydantic import BaseModel, Field

FieldType = Literal["string", "number", "boolean"]
FeatureType = Literal["summaries", "scoring", "improvement"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConfigField(BaseModel):
    type: FieldType
    required: bool = False
    default: Any = None
    secret: bool = False
    description: str | None = None


class ProviderMetadata(BaseModel, frozen=True):
    id: str
    display_name: str
    description: str
    requires_auth: bool = False
    supports_streaming: bool = True
    supports_cost_tracking: bool = False
    config_schema: dict[str, ConfigField] = Field(default_factory=dict)


class ProviderCapabilities(BaseModel):
    streaming: bool = True
    cost_tracking: bool = False
    model_listing: bool = True
    custom_endpoints: bool = False
    requires_auth: bool = False


class CompletionOptions(BaseModel):
    prompt: str
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    stop: list[str] | None = None
    stream: bool | None = None
    model: str | None = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Cost(BaseModel):
    amount: float
    currency: str = "USD"


class CompletionResponse(BaseModel):
    text: str
    model: str
    provider: str
    timestamp: datetime = Field(default_factory=utcnow)
    usage: Usage | None = None
    cost: Cost | None = None
    error: str | None = None


class StreamChunk(BaseModel):
    text: str = ""
    is_complete: bool = False
    model: str
    provider: str
    usage: Usage | None = None
    cost: Cost | None = None
    error: str | None = None


class ModelInfo(BaseModel):
    id: str
    name: str
    description: str | None = None
    context_length: int | None = None
    supports_streaming: bool = True


class ConnectionTestResult(BaseModel):
    success: bool
    error: str | None = None
    details: dict[str, Any] | None = None


class LLMProvider:
    """Abstract provider.

    ``generate_completion`` and ``stream_completion`` report provider-side
    failures in-band through ``error`` rather than raising.
    """

    provider_id: str
    capabilities: ProviderCapabilities = ProviderCapabilities()

    def __init__(self, config: dict[str, Any]) -> None:
        self._config = dict(config)

    @property
    def model(self) -> str:
        raise NotImplementedError

    async def is_available(self) -> bool:
        raise NotImplementedError

    async def test_connection(self) -> ConnectionTestResult:
        raise NotImplementedError

    async def list_models(self) -> list[ModelInfo]:
        raise NotImplementedError

    async def generate_completion(self, options: CompletionOptions) -> CompletionResponse:
        raise NotImplementedError

    def stream_completion(self, options: CompletionOptions) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release resources held by the instance."""
        return None

    def _failure(self, message: str, model: str | None = None) -> CompletionResponse:
        return CompletionResponse(
            text="", model=model or self.model, provider=self.provider_id, error=message
        )

    def _terminal_chunk(
        self,
        *,
        model: str | None = None,
        usage: Usage | None = None,
        cost: Cost | None = None,
        error: str | None = None,
    ) -> StreamChunk:
        return StreamChunk(
            text="",
            is_complete=True,
            model=model or self.model,
            provider=self.provider_id,
            usage=usage,
            cost=cost,
            error=error,
        )
