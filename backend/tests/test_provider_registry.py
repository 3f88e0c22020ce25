"""
Unit tests for provider resolution and the configuration store.

Tests verify:
- Credentials are mapped to providers by prefix, unknown prefixes fall
  back to the generic OpenAI-compatible provider
- Resolution is cached by configuration fingerprint
- Missing or placeholder credentials resolve to the local provider
- The store persists configurations and migrates legacy keys
"""
import json

from aria_coach.services.llm.config_store import (
    CONFIG_KEY,
    LEGACY_KEY,
    LLMConfigStore,
    StoredConfiguration,
    config_from_credential,
    is_valid_api_key,
    mask_api_key,
)
from aria_coach.services.llm.registry import (
    LOCAL_PROVIDER,
    ProviderResolver,
    ResolutionCache,
    fingerprint,
)


def test_credential_prefix_detection():
    assert config_from_credential("gsk_abcdefghijklmnop").provider == "groq"
    assert config_from_credential("sk-ant-abcdefghijklmnop").provider == "anthropic"
    assert config_from_credential("sk-or-abcdefghijklmnop").provider == "openrouter"
    assert config_from_credential("sk-abcdefghijklmnop").provider == "openai"
    assert config_from_credential("AIzaSyabcdefghijklmnop").provider == "gemini"


def test_unknown_prefix_resolves_to_generic_endpoint():
    resolver = ProviderResolver(cache=ResolutionCache())

    adapter = resolver.resolve("xk-custom-1234567890")

    assert adapter.kind == "custom"
    assert adapter.base_url == "https://api.openai.com/v1"
    assert adapter.default_model == "gpt-4o-mini"
    assert adapter.router_model == "gpt-4o-mini"


def test_resolution_is_cached_by_fingerprint():
    cache = ResolutionCache()
    resolver = ProviderResolver(cache=cache)
    config = StoredConfiguration(provider="groq", api_key="gsk_abcdefghijklmnop", model="llama-3.3-70b-versatile")

    first = resolver.resolve(config)
    second = resolver.resolve(StoredConfiguration(**config.model_dump()))
    other_model = resolver.resolve(config.model_copy(update={"model": "gemma2-9b-it"}))

    assert first is second
    assert other_model is not first
    assert other_model.default_model == "gemma2-9b-it"


def test_fingerprint_hides_credential():
    config = StoredConfiguration(provider="openai", api_key="sk-supersecretvalue123")

    key = fingerprint(config)

    assert "supersecret" not in key
    assert key.startswith("openai|")
    assert fingerprint(None) == LOCAL_PROVIDER


def test_invalid_credentials_resolve_to_local():
    resolver = ProviderResolver(cache=ResolutionCache(), local_base_url="http://gpu-box:11434/v1")

    for source in (None, "", "short", "your_groq_api_key_here"):
        adapter = resolver.resolve(source)
        assert adapter.kind == LOCAL_PROVIDER
        assert adapter.base_url == "http://gpu-box:11434/v1"


def test_azure_without_endpoint_falls_back_to_local():
    resolver = ProviderResolver(cache=ResolutionCache())
    config = StoredConfiguration(provider="azure", api_key="0123456789abcdef", model="gpt-4o")

    assert resolver.resolve(config).kind == LOCAL_PROVIDER


def test_catalog_router_model_is_used():
    resolver = ProviderResolver(cache=ResolutionCache())

    adapter = resolver.resolve("gsk_abcdefghijklmnop")

    assert adapter.model_for(use_router_model=True) == "llama-3.1-8b-instant"
    assert adapter.model_for() == "llama-3.3-70b-versatile"
    assert adapter.model_for("custom-model", use_router_model=True) == "custom-model"


def test_cache_is_bounded():
    cache = ResolutionCache(max_entries=2)
    resolver = ProviderResolver(cache=cache)

    for key in ("gsk_aaaaaaaaaaaa", "gsk_bbbbbbbbbbbb", "gsk_cccccccccccc"):
        resolver.resolve(key)

    assert len(cache) == 2


def test_key_validation_and_masking():
    assert not is_valid_api_key(None)
    assert not is_valid_api_key("   short  ")
    assert not is_valid_api_key("your_api_key_here")
    assert is_valid_api_key("gsk_abcdefghijklmnop")
    assert mask_api_key("gsk_abcdefghijklmnop") == "gsk_...mnop"
    assert mask_api_key("abc") == "***"


class TestConfigStore:
    """Test the JSON-file configuration store."""

    def test_save_and_load(self, tmp_path):
        store = LLMConfigStore(tmp_path / "config.json")
        config = StoredConfiguration(provider="mistral", api_key="mistral-key-123456", model="mistral-large-latest")

        store.save(config)

        assert store.load() == config
        raw = json.loads((tmp_path / "config.json").read_text())
        assert raw[CONFIG_KEY]["apiKey"] == "mistral-key-123456"
        assert raw[LEGACY_KEY] == "mistral-key-123456"

    def test_legacy_key_is_migrated(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({LEGACY_KEY: "gsk_abcdefghijklmnop"}))

        config = LLMConfigStore(path).load()

        assert config.provider == "groq"
        assert config.model == "llama-3.3-70b-versatile"

    def test_env_key_is_last_resort(self, tmp_path):
        store = LLMConfigStore(tmp_path / "missing.json", env_api_key="sk-abcdefghijklmnop")

        assert store.load().provider == "openai"
        assert LLMConfigStore(tmp_path / "missing.json").load() is None

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        assert LLMConfigStore(path).load() is None

    def test_clear(self, tmp_path):
        store = LLMConfigStore(tmp_path / "config.json")
        store.save_api_key("gsk_abcdefghijklmnop")

        store.clear()

        assert store.load() is None
        assert not (tmp_path / "config.json").exists()

    def test_masked_view(self):
        config = StoredConfiguration(provider="openai", api_key="sk-abcdefghijklmnop", model="gpt-4o")

        masked = config.masked()

        assert masked["apiKey"] == "sk-a...mnop"
        assert masked["model"] == "gpt-4o"


class TestLocalConfiguration:
    """A saved local configuration needs no key and redirects the local tier."""

    LOCAL = StoredConfiguration(provider="local", api_key="", model="llama3.2", base_url="http://gpu-box:11434/v1")

    def test_saved_without_credential(self, tmp_path):
        store = LLMConfigStore(tmp_path / "config.json")

        store.save(self.LOCAL)

        assert store.load() == self.LOCAL
        raw = json.loads((tmp_path / "config.json").read_text())
        assert LEGACY_KEY not in raw

    def test_resolved_with_its_model_and_server(self, tmp_path):
        store = LLMConfigStore(tmp_path / "config.json")
        store.save(self.LOCAL)
        cache = ResolutionCache()
        resolver = ProviderResolver(cache=cache)

        adapter = resolver.resolve(store.load())

        assert adapter.kind == LOCAL_PROVIDER
        assert adapter.base_url == "http://gpu-box:11434/v1"
        assert adapter.default_model == "llama3.2"
        assert adapter.router_model == "llama3.2"
        assert resolver.resolve(self.LOCAL) is adapter
        assert len(cache) == 1

    def test_bare_local_configuration_uses_defaults(self):
        resolver = ProviderResolver(cache=ResolutionCache())

        adapter = resolver.resolve(StoredConfiguration(provider="local", api_key=""))

        assert adapter is resolver.local_adapter()
        assert adapter.default_model == "qwen3:4b"
