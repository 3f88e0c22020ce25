"""
Persisted LLM configuration.

The configuration lives in a small JSON file owned by the local user:

    {
      "aria_llm_config": {"provider": "groq", "apiKey": "...", "model": "...",
                          "baseUrl": null, "deployment": null, "apiVersion": null},
      "aria_llm_api_key": "..."
    }

``aria_llm_api_key`` is the legacy single-credential entry; it is still
written for older clients and migrated to a full configuration on read.

Lookup order on ``load()``:
1. full configuration
2. legacy credential (provider inferred from its prefix)
3. ``LLM_API_KEY`` environment variable (provider inferred from its prefix)

Placeholder values and keys shorter than 10 characters count as absent. A
``local`` configuration needs no credential: it only points the local tier
at another server or model.

Environment configuration:
- LLM_CONFIG_PATH: config file (default: ~/.aria_coach/llm_config.json)
- LLM_API_KEY: fallback credential
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from aria_coach.core.logging import get_logger
from aria_coach.services.llm.providers import KEY_PREFIXES, get_provider_definition

logger = get_logger(__name__)

CONFIG_KEY = "aria_llm_config"
LEGACY_KEY = "aria_llm_api_key"

PLACEHOLDER_VALUES = frozenset({
    "your_groq_api_key_here",
    "your_llm_api_key_here",
    "your_api_key_here",
})
MIN_KEY_LENGTH = 10

LOCAL_PROVIDER = "local"

# Provider id used when a credential's prefix is not recognised.
GENERIC_PROVIDER = "custom"
GENERIC_MODEL = "gpt-4o-mini"


class StoredConfiguration(BaseModel):
    """User-selected provider, credential and model."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    provider: str
    api_key: str = Field(..., repr=False)
    model: str = ""
    base_url: Optional[str] = None
    deployment: Optional[str] = None
    api_version: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        if not self.provider:
            return False
        return self.provider == LOCAL_PROVIDER or is_valid_api_key(self.api_key)

    def masked(self) -> Dict[str, Any]:
        """Camel-case dict with the key reduced to its first and last characters."""
        data = self.model_dump(by_alias=True)
        data["apiKey"] = mask_api_key(self.api_key)
        return data


def mask_api_key(key: str) -> str:
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}...{key[-4:]}"


def is_valid_api_key(key: Optional[str]) -> bool:
    if not key or len(key.strip()) < MIN_KEY_LENGTH:
        return False
    return key.strip() not in PLACEHOLDER_VALUES


def detect_provider_from_key(key: str) -> Optional[str]:
    """Provider id inferred from a credential prefix, or None when unrecognised."""
    for prefix, provider_id in KEY_PREFIXES:
        if key.startswith(prefix):
            return provider_id
    return None


def config_from_credential(key: str) -> StoredConfiguration:
    """Build a full configuration from a bare credential (legacy path)."""
    key = key.strip()
    provider_id = detect_provider_from_key(key) or GENERIC_PROVIDER
    definition = get_provider_definition(provider_id)
    model = definition.default_model if definition and definition.default_model else GENERIC_MODEL
    return StoredConfiguration(provider=provider_id, api_key=key, model=model)


class LLMConfigStore:
    """JSON-file backed configuration store with atomic writes."""

    def __init__(self, path: Path, env_api_key: Optional[str] = None):
        self.path = Path(path)
        self.env_api_key = env_api_key

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning(
                "llm_config_unreadable",
                path=str(self.path),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".llm_config.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def load(self) -> Optional[StoredConfiguration]:
        data = self._read()

        raw_config = data.get(CONFIG_KEY)
        if isinstance(raw_config, dict):
            try:
                config = StoredConfiguration.model_validate(raw_config)
            except ValidationError as exc:
                logger.warning("llm_config_invalid", error=str(exc))
            else:
                if config.is_usable:
                    return config

        legacy_key = data.get(LEGACY_KEY)
        if isinstance(legacy_key, str) and is_valid_api_key(legacy_key):
            logger.info("llm_config_migrated_legacy_key")
            return config_from_credential(legacy_key)

        if is_valid_api_key(self.env_api_key):
            return config_from_credential(self.env_api_key)

        return None

    def save(self, config: StoredConfiguration) -> None:
        data: Dict[str, Any] = {CONFIG_KEY: config.model_dump(by_alias=True)}
        if is_valid_api_key(config.api_key):
            data[LEGACY_KEY] = config.api_key
        self._write(data)
        logger.info(
            "llm_config_saved",
            provider=config.provider,
            model=config.model,
        )

    def save_api_key(self, key: str) -> StoredConfiguration:
        """Legacy entry point: store a bare credential, inferring the provider."""
        config = config_from_credential(key)
        self.save(config)
        return config

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("llm_config_cleared")

    def credential(self) -> Optional[str]:
        config = self.load()
        return config.api_key if config else None


_config_store: Optional[LLMConfigStore] = None


def get_config_store() -> LLMConfigStore:
    """Global store accessor configured from the environment."""
    global _config_store
    if _config_store is None:
        default_path = Path.home() / ".aria_coach" / "llm_config.json"
        path = Path(os.getenv("LLM_CONFIG_PATH") or default_path)
        _config_store = LLMConfigStore(path=path, env_api_key=os.getenv("LLM_API_KEY"))
    return _config_store
