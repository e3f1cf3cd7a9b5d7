"""Completion route: sanitize the prompt, then hand it to the LLM manager."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from devark.core.exceptions import CLIProviderError, ProviderUnavailableError
from devark.privacy.sanitizer import SanitizationMetadata, sanitize
from devark.providers.base import CompletionOptions, FeatureType

from .services import Services, get_services

logger = logging.getLogger("devark.api.completions")

router = APIRouter(prefix="/v1")


class CompletionRequest(BaseModel):
    prompt: str
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    stop: list[str] | None = None
    model: str | None = None
    feature: FeatureType | None = None


def _combined_counts(*items: SanitizationMetadata) -> dict[str, int]:
    counts: dict[str, int] = {}
    for metadata in items:
        for key, value in asdict(metadata).items():
            counts[key] = counts.get(key, 0) + value
    return counts


def _error_response(status_code: int, message: str, error_type: str, code: str, /, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type, "code": code, **extra}},
    )


@router.post("/completions")
async def create_completion(
    payload: CompletionRequest,
    services: Annotated[Services, Depends(get_services)],
) -> Any:
    manager = services.manager
    if not manager.is_initialized():
        return _error_response(
            503,
            "No LLM provider is configured. Open settings to choose one.",
            "configuration_error",
            "manager_not_initialized",
        )

    sanitized = sanitize(payload.prompt)
    sanitized_system = sanitize(payload.system_prompt) if payload.system_prompt else None
    options = CompletionOptions(
        prompt=sanitized.content,
        system_prompt=sanitized_system.content if sanitized_system else None,
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
        stop=payload.stop,
        model=payload.model,
    )
    try:
        if payload.feature:
            response = await manager.generate_completion_for_feature(payload.feature, options)
        else:
            response = await manager.generate_completion(options)
    except ProviderUnavailableError as exc:
        return _error_response(
            503,
            f"Provider '{exc.provider_id}' is unavailable: {exc.message}",
            "provider_unavailable",
            "provider_unavailable",
        )
    except CLIProviderError as exc:
        logger.warning(
            "CLI provider failed",
            extra={"event": "cli_provider_failed", "error_type": exc.error_type},
        )
        return _error_response(
            502,
            exc.message,
            "cli_provider_error",
            exc.error_type,
            error_type=exc.error_type,
            suggestion=exc.suggestion,
        )

    metadata = [sanitized.metadata]
    if sanitized_system is not None:
        metadata.append(sanitized_system.metadata)
    counts = _combined_counts(*metadata)
    if sum(counts.values()):
        logger.info(
            "Prompt sanitized before completion",
            extra={"event": "prompt_sanitized", **counts},
        )
    return {
        **response.model_dump(mode="json"),
        "sanitization": counts,
    }
