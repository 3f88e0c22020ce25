"""
Health check endpoints.
"""
from typing import Any, Dict

from fastapi import APIRouter, Query

from aria_coach.core.logging import get_logger
from aria_coach.services.llm.config_store import get_config_store
from aria_coach.services.llm.invocation import get_llm_invoker
from aria_coach.services.llm.on_device import get_on_device_engine
from aria_coach.services.llm.registry import LOCAL_PROVIDER, get_provider_resolver

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running"
    }


@router.get("/llm")
async def llm_health(probe: bool = Query(False, description="Send a minimal request to each remote tier")):
    """
    State of the LLM tiers.

    Returns:
        - configured: provider and model of the stored configuration (key never returned)
        - local: base URL and models of the local provider
        - on_device: engine status, loaded model and device
        - probes: connection test per remote tier when ``probe=true``
    """
    resolver = get_provider_resolver()
    config = resolver.normalize(get_config_store().load())
    local_configured = config is not None and config.provider == LOCAL_PROVIDER
    local = resolver.resolve(config) if local_configured else resolver.local_adapter()

    response: Dict[str, Any] = {
        "status": "ok",
        "configured": {
            "provider": config.provider,
            "model": config.model,
        } if config else None,
        "local": {
            "baseUrl": local.base_url,
            "model": local.default_model,
            "routerModel": local.router_model,
        },
        "onDevice": get_on_device_engine().snapshot(),
    }

    if probe:
        invoker = get_llm_invoker()
        probes = {}
        if config is not None and not local_configured:
            result = await invoker.probe(resolver.resolve(config), config.api_key)
            probes["configured"] = result.model_dump(by_alias=True)
        probes["local"] = (await invoker.probe(local, None)).model_dump(by_alias=True)
        response["probes"] = probes
        if not any(p["success"] for p in probes.values()):
            response["status"] = "degraded"
            logger.warning("llm_health_degraded", tiers=list(probes))

    return response
