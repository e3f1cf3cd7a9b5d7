"""Admin/status endpoints for providers, settings and the hook pipeline."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException

from devark.core.exceptions import ProviderUnavailableError

from .services import Services, get_services

logger = logging.getLogger("devark.api.admin")

router = APIRouter(prefix="/admin")

ServicesDep = Annotated[Services, Depends(get_services)]


@router.get("/providers")
async def list_providers(services: ServicesDep) -> dict[str, Any]:
    statuses = await services.detection.detect_all()
    return {
        "providers": [status.model_dump() for status in statuses],
        "active": services.detection.get_active_provider_id(),
    }


@router.post("/providers/refresh")
async def refresh_providers(services: ServicesDep) -> dict[str, Any]:
    services.detection.clear_cache()
    return await list_providers(services)


@router.post("/providers/test")
async def test_providers(services: ServicesDep) -> dict[str, Any]:
    results = await services.manager.test_all_providers()
    return {"results": {provider_id: result.model_dump() for provider_id, result in results.items()}}


@router.post("/providers/{provider_id}/activate")
async def activate_provider(provider_id: str, services: ServicesDep) -> dict[str, Any]:
    if not services.registry.has_provider(provider_id):
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")

    if services.manager.has_provider(provider_id):
        try:
            await services.manager.switch_provider(provider_id)
        except ProviderUnavailableError as exc:
            raise HTTPException(status_code=409, detail=exc.message) from exc
        services.detection.clear_cache()
        return {"status": "ok", "active": provider_id}

    # Not instantiated yet (e.g. a CLI provider that was disabled): persist and rebuild.
    previous = services.llm_settings.get_active_provider()
    services.llm_settings.set_active_provider(provider_id)
    if not await services.initialize_manager():
        services.llm_settings.set_active_provider(previous)
        await services.initialize_manager()
        raise HTTPException(
            status_code=400,
            detail=f"Provider '{provider_id}' could not be initialized. Check its configuration.",
        )
    return {"status": "ok", "active": provider_id}


@router.get("/providers/{provider_id}/models")
async def list_provider_models(provider_id: str, services: ServicesDep) -> dict[str, Any]:
    provider = services.manager.get_provider(provider_id)
    if provider is None:
        raise HTTPException(status_code=404, detail="Provider not configured")
    try:
        models = await provider.list_models()
    except ProviderUnavailableError as exc:
        raise HTTPException(status_code=503, detail=exc.message) from exc
    return {"models": [model.model_dump() for model in models]}


@router.put("/providers/{provider_id}/credentials")
async def set_provider_key(
    provider_id: str,
    services: ServicesDep,
    api_key_body: Annotated[dict | None, Body()] = None,
) -> dict[str, Any]:
    api_key = (api_key_body or {}).get("api_key")
    if not api_key:
        raise HTTPException(status_code=400, detail="Missing api_key")
    if not services.registry.has_provider(provider_id):
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")

    services.secret_store.set_api_key(provider_id, api_key)
    logger.info(
        "Provider credentials updated",
        extra={"event": "provider_credentials_updated", "provider_id": provider_id},
    )
    initialized = await services.initialize_manager()
    return {"status": "ok", "manager_initialized": initialized}


@router.delete("/providers/{provider_id}/credentials")
async def delete_provider_key(provider_id: str, services: ServicesDep) -> dict[str, Any]:
    if not services.secret_store.delete_api_key(provider_id):
        raise HTTPException(status_code=404, detail="No stored API key")
    initialized = await services.initialize_manager()
    return {"status": "ok", "manager_initialized": initialized}


@router.get("/settings")
def settings_summary(services: ServicesDep) -> dict[str, Any]:
    summary = services.llm_settings.get_config_summary()
    summary["manager"] = services.manager.get_status_summary()
    summary["stored_credentials"] = services.secret_store.list_provider_ids()
    return summary


@router.get("/hooks")
def hooks_status(services: ServicesDep) -> dict[str, Any]:
    return services.pipeline.get_status()


@router.post("/hooks/scan")
async def scan_hooks(services: ServicesDep) -> dict[str, Any]:
    processed = await services.pipeline.process_hook_files()
    return {"processed": processed, "status": services.pipeline.get_status()}
