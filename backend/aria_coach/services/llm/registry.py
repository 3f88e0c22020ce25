"""
Provider resolution.

``ProviderResolver.resolve`` maps a stored configuration, a bare credential,
or nothing at all to a ``ProviderAdapter``:

- full configuration  -> the configured provider (catalog defaults fill gaps)
- bare credential     -> provider inferred from the key prefix; unknown
                         prefixes get a generic OpenAI-compatible adapter on
                         the OpenAI base URL
- nothing / invalid   -> the default local provider (no credential needed)

Resolution never raises. Results are memoised in a ``ResolutionCache`` the
caller owns, keyed by a fingerprint of every field that shapes the adapter.

Environment configuration (read by ``get_provider_resolver``):
- LOCAL_LLM_BASE_URL: default local provider (default: http://localhost:11434/v1)
- LOCAL_LLM_MODEL: local answer model (default: qwen3:4b)
- LOCAL_LLM_ROUTER_MODEL: local router model (default: qwen3:1.7b)
"""
import hashlib
import os
from collections import OrderedDict
from threading import Lock
from typing import Optional, Union

from pydantic import ValidationError

from aria_coach.core.logging import get_logger
from aria_coach.core.metrics import record_resolution_cache
from aria_coach.services.llm.config_store import (
    GENERIC_MODEL,
    LOCAL_PROVIDER,
    StoredConfiguration,
    config_from_credential,
    is_valid_api_key,
)
from aria_coach.services.llm.providers import (
    PROVIDER_CATALOG,
    ProviderAdapter,
    build_adapter,
    get_provider_definition,
)

logger = get_logger(__name__)

GENERIC_BASE_URL = PROVIDER_CATALOG["openai"].default_base_url


def fingerprint(config: Optional[StoredConfiguration]) -> str:
    """
    Stable cache key for a configuration.

    The credential contributes only a short hash, never its clear text.
    """
    if config is None:
        return LOCAL_PROVIDER
    key_hash = hashlib.sha256(config.api_key.encode("utf-8")).hexdigest()[:16]
    return "|".join([
        config.provider,
        key_hash,
        config.model or "",
        config.base_url or "",
        config.deployment or "",
        config.api_version or "",
    ])


class ResolutionCache:
    """Bounded LRU map from fingerprint to adapter."""

    def __init__(self, max_entries: int = 32):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, ProviderAdapter]" = OrderedDict()
        self._lock = Lock()

    def get(self, key: str) -> Optional[ProviderAdapter]:
        with self._lock:
            adapter = self._entries.get(key)
            if adapter is not None:
                self._entries.move_to_end(key)
            return adapter

    def put(self, key: str, adapter: ProviderAdapter) -> None:
        with self._lock:
            self._entries[key] = adapter
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ProviderResolver:
    """Turns configuration into adapters; holds no configuration itself."""

    def __init__(
        self,
        cache: Optional[ResolutionCache] = None,
        local_base_url: Optional[str] = None,
        local_model: Optional[str] = None,
        local_router_model: Optional[str] = None,
    ):
        self.cache = cache if cache is not None else ResolutionCache()
        definition = PROVIDER_CATALOG[LOCAL_PROVIDER]
        self.local_base_url = local_base_url or definition.default_base_url
        self.local_model = local_model or definition.default_model
        self.local_router_model = local_router_model or definition.router_model

    def local_adapter(self) -> ProviderAdapter:
        key = f"{LOCAL_PROVIDER}|{self.local_base_url}|{self.local_model}|{self.local_router_model}"
        cached = self.cache.get(key)
        if cached is not None:
            record_resolution_cache(hit=True)
            return cached
        record_resolution_cache(hit=False)
        adapter = build_adapter(
            PROVIDER_CATALOG[LOCAL_PROVIDER],
            model=self.local_model,
            base_url=self.local_base_url,
            router_model=self.local_router_model,
        )
        self.cache.put(key, adapter)
        return adapter

    def normalize(
        self,
        source: Union[StoredConfiguration, str, None],
    ) -> Optional[StoredConfiguration]:
        """Configuration for ``source``, or None when it should use the local provider."""
        if isinstance(source, str):
            if not is_valid_api_key(source):
                return None
            return config_from_credential(source)
        if isinstance(source, StoredConfiguration) and source.is_usable:
            return source
        return None

    def resolve(self, source: Union[StoredConfiguration, str, None] = None) -> ProviderAdapter:
        config = self.normalize(source)
        if config is None:
            return self.local_adapter()
        if config.provider == LOCAL_PROVIDER and not (config.model or config.base_url):
            return self.local_adapter()

        key = fingerprint(config)
        cached = self.cache.get(key)
        if cached is not None:
            record_resolution_cache(hit=True)
            return cached
        record_resolution_cache(hit=False)

        adapter = self._build(config)
        self.cache.put(key, adapter)
        logger.info(
            "provider_resolved",
            provider=adapter.kind,
            model=adapter.default_model,
            base_url=adapter.base_url,
        )
        return adapter

    def _build(self, config: StoredConfiguration) -> ProviderAdapter:
        if config.provider == LOCAL_PROVIDER:
            # A chosen local model also answers routing calls.
            return build_adapter(
                PROVIDER_CATALOG[LOCAL_PROVIDER],
                model=config.model or self.local_model,
                base_url=config.base_url or self.local_base_url,
                router_model=config.model or self.local_router_model,
            )
        definition = get_provider_definition(config.provider) or get_provider_definition("custom")
        base_url = config.base_url
        if not base_url and definition.needs_base_url:
            if definition.id == "azure":
                logger.warning("provider_resolution_missing_base_url", provider=definition.id)
                return self.local_adapter()
            base_url = GENERIC_BASE_URL

        model = config.model or definition.default_model or GENERIC_MODEL
        # Catalog router models only apply to catalog providers; a custom
        # endpoint routes with the model it was configured with.
        router_model = definition.router_model if definition.id != "custom" else model
        try:
            return build_adapter(
                definition,
                model=model,
                base_url=base_url,
                deployment=config.deployment,
                api_version=config.api_version,
                router_model=router_model,
            )
        except (ValidationError, ValueError) as exc:
            logger.warning(
                "provider_resolution_failed",
                provider=config.provider,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return self.local_adapter()


_resolution_cache: Optional[ResolutionCache] = None


def get_resolution_cache() -> ResolutionCache:
    global _resolution_cache
    if _resolution_cache is None:
        _resolution_cache = ResolutionCache()
    return _resolution_cache


def get_provider_resolver() -> ProviderResolver:
    """Resolver bound to the process-wide cache and the local provider env settings."""
    return ProviderResolver(
        cache=get_resolution_cache(),
        local_base_url=os.getenv("LOCAL_LLM_BASE_URL"),
        local_model=os.getenv("LOCAL_LLM_MODEL"),
        local_router_model=os.getenv("LOCAL_LLM_ROUTER_MODEL"),
    )
