"""
LLM configuration endpoints.

GET    /llm/providers          provider catalog
GET    /llm/config             stored configuration (masked key)
PUT    /llm/config             save a configuration
DELETE /llm/config             clear it
POST   /llm/config/test        connection test (body: configuration to test,
                               or none to test the stored/local one)
GET    /llm/on-device          on-device engine state
POST   /llm/on-device/load     load a model (waits for completion)
POST   /llm/on-device/unload   unload the current model
"""
from typing import List, Optional

from fastapi import APIRouter, HTTPException

from aria_coach.core.logging import get_logger
from aria_coach.models.requests import LLMConfigRequest, OnDeviceLoadRequest
from aria_coach.models.responses import LLMConfigResponse, ProviderSummary
from aria_coach.services.llm.config_store import (
    StoredConfiguration,
    config_from_credential,
    get_config_store,
    is_valid_api_key,
    mask_api_key,
)
from aria_coach.services.llm.errors import OnDeviceCapabilityError
from aria_coach.services.llm.invocation import ConfigTestResult, get_llm_invoker
from aria_coach.services.llm.on_device import get_on_device_engine
from aria_coach.services.llm.providers import PROVIDER_CATALOG, get_provider_definition
from aria_coach.services.llm.registry import LOCAL_PROVIDER, get_provider_resolver

logger = get_logger(__name__)
router = APIRouter()


def _to_configuration(body: LLMConfigRequest) -> StoredConfiguration:
    provider = (body.provider or "").strip().lower()
    if provider and get_provider_definition(provider) is None:
        raise HTTPException(status_code=400, detail=f"Unknown provider '{body.provider}'")
    if provider != LOCAL_PROVIDER and not is_valid_api_key(body.api_key):
        raise HTTPException(status_code=400, detail="Invalid API key")

    if not provider:
        inferred = config_from_credential(body.api_key)
        provider = inferred.provider
        default_model = inferred.model
    else:
        default_model = get_provider_definition(provider).default_model

    return StoredConfiguration(
        provider=provider,
        api_key=body.api_key.strip(),
        model=body.model or default_model,
        base_url=body.base_url or None,
        deployment=body.deployment or None,
        api_version=body.api_version or None,
    )


def _config_response(config: Optional[StoredConfiguration]) -> LLMConfigResponse:
    if config is None:
        return LLMConfigResponse(configured=False)
    return LLMConfigResponse(
        configured=True,
        provider=config.provider,
        model=config.model,
        api_key=mask_api_key(config.api_key),
        base_url=config.base_url,
        deployment=config.deployment,
        api_version=config.api_version,
    )


@router.get("/providers", response_model=List[ProviderSummary], response_model_by_alias=True)
async def list_providers():
    return [
        ProviderSummary(
            id=definition.id,
            name=definition.name,
            description=definition.description,
            default_model=definition.default_model,
            router_model=definition.router_model,
            models=definition.models,
            needs_base_url=definition.needs_base_url,
            key_prefix=definition.key_prefix,
        )
        for definition in PROVIDER_CATALOG.values()
    ]


@router.get("/config", response_model=LLMConfigResponse, response_model_by_alias=True)
async def get_config():
    return _config_response(get_config_store().load())


@router.put("/config", response_model=LLMConfigResponse, response_model_by_alias=True)
async def put_config(body: LLMConfigRequest):
    config = _to_configuration(body)
    get_config_store().save(config)
    return _config_response(config)


@router.delete("/config", response_model=LLMConfigResponse, response_model_by_alias=True)
async def delete_config():
    get_config_store().clear()
    return _config_response(None)


@router.post("/config/test", response_model=ConfigTestResult)
async def test_config(body: Optional[LLMConfigRequest] = None):
    """
    Send a minimal request with the given configuration.

    Always answers 200; ``success`` and ``error`` describe the outcome.
    """
    resolver = get_provider_resolver()
    config = _to_configuration(body) if body is not None else resolver.normalize(get_config_store().load())
    adapter = resolver.resolve(config)
    result = await get_llm_invoker().probe(adapter, config.api_key if config else None)
    logger.info("llm_config_tested", provider=result.provider, model=result.model, success=result.success)
    return result


@router.get("/on-device")
async def on_device_status():
    return get_on_device_engine().snapshot()


@router.post("/on-device/load")
async def on_device_load(body: Optional[OnDeviceLoadRequest] = None):
    engine = get_on_device_engine()
    try:
        await engine.load_model(body.model_id if body else None)
    except OnDeviceCapabilityError as exc:
        logger.warning("on_device_load_rejected", cause=exc.cause, error=exc.message)
        raise HTTPException(status_code=409, detail={"cause": exc.cause, "message": exc.message})
    return engine.snapshot()


@router.post("/on-device/unload")
async def on_device_unload():
    engine = get_on_device_engine()
    await engine.unload()
    return engine.snapshot()
