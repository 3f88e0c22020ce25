"""
Provider adapters and catalog.

An adapter is an immutable value describing one provider endpoint and owning
its wire codec: URL, headers, request body, response and error parsing, and
(for OpenAI-compatible endpoints) SSE stream decoding. The set of wire formats
is closed:

- ``openai``    : OpenAI-compatible chat completions (Groq, OpenAI, Azure,
                  OpenRouter, Mistral, Together, DeepSeek, Ollama, custom)
- ``gemini``    : Google Generative Language ``generateContent``
- ``anthropic`` : Anthropic Messages API (no native JSON mode: ``json_mode``
                  appends a JSON-only instruction to the system prompt)

No network I/O happens here; see ``invocation.py``.
"""
import json
from typing import Any, Dict, List, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

Message = Dict[str, str]

WireFormat = Literal["openai", "gemini", "anthropic"]

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_AZURE_API_VERSION = "2024-10-21"

# Model families that take max_completion_tokens and reject temperature.
REASONING_MODEL_PREFIXES = ("o1", "o3", "o4", "gpt-5")
REASONING_MODEL_NAMES = ("deepseek-reasoner",)

# Providers whose reasoning models expect the "developer" role instead of "system".
DEVELOPER_ROLE_PROVIDERS = ("openai", "azure")

JSON_ONLY_INSTRUCTION = "Réponds uniquement avec un objet JSON valide, sans texte autour."


class StreamChunk(NamedTuple):
    text: Optional[str]
    done: bool = False


def is_reasoning_model(model: str) -> bool:
    """o1/o3/o4/gpt-5 families and deepseek-reasoner, with or without a vendor prefix."""
    name = (model or "").lower().rsplit("/", 1)[-1]
    if name in REASONING_MODEL_NAMES:
        return True
    return name.startswith(REASONING_MODEL_PREFIXES)


def _merge_turns(messages: List[Message], assistant_role: str) -> List[Dict[str, str]]:
    """Drop system turns, map assistant role, merge consecutive same-role turns."""
    merged: List[Dict[str, str]] = []
    for message in messages:
        role = message.get("role", "user")
        if role == "system":
            continue
        role = assistant_role if role == "assistant" else "user"
        content = message.get("content") or ""
        if merged and merged[-1]["role"] == role:
            merged[-1]["content"] = f"{merged[-1]['content']}\n\n{content}"
        else:
            merged.append({"role": role, "content": content})
    return merged


def _system_text(messages: List[Message]) -> Optional[str]:
    parts = [m.get("content") or "" for m in messages if m.get("role") == "system"]
    return "\n\n".join(p for p in parts if p) or None


def _error_message_from_body(body: str) -> str:
    """Extract a message from the common ``{"error": {...}}`` / ``{"message": ...}`` shapes."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return (body or "").strip()[:300]

    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict):
        return str(data)[:300]

    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("status") or error.get("type")
        if message:
            return str(message)
    elif isinstance(error, str) and error:
        return error
    if data.get("message"):
        return str(data["message"])
    return (body or "").strip()[:300]


class ProviderAdapter(BaseModel):
    """Common fields of every adapter variant."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., description="Provider id (groq, openai, local, ...)")
    name: str = Field(..., description="Display name")
    base_url: str
    default_model: str
    router_model: str
    deployment: Optional[str] = None
    api_version: Optional[str] = None
    requires_auth: bool = True

    def model_for(self, model: Optional[str] = None, use_router_model: bool = False) -> str:
        if model:
            return model
        return self.router_model if use_router_model else self.default_model

    @property
    def supports_streaming(self) -> bool:
        return False

    def parse_error(self, status_code: int, body: str) -> str:
        return _error_message_from_body(body) or f"HTTP {status_code}"

    def parse_stream_line(self, line: str) -> StreamChunk:
        raise NotImplementedError(f"{self.kind} does not stream")


class OpenAICompatibleAdapter(ProviderAdapter):
    wire_format: Literal["openai"] = "openai"

    @property
    def supports_streaming(self) -> bool:
        return True

    def build_url(self, model: str, stream: bool = False) -> str:
        base = self.base_url.rstrip("/")
        if self.kind == "azure":
            deployment = self.deployment or model
            version = self.api_version or DEFAULT_AZURE_API_VERSION
            return f"{base}/openai/deployments/{deployment}/chat/completions?api-version={version}"
        return f"{base}/chat/completions"

    def build_headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if not api_key:
            return headers
        if self.kind == "azure":
            headers["api-key"] = api_key
        else:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def build_request(
        self,
        messages: List[Message],
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
        stream: bool = False,
    ) -> Dict[str, Any]:
        reasoning = is_reasoning_model(model)
        wire_messages = []
        for message in messages:
            role = message.get("role", "user")
            if reasoning and role == "system" and self.kind in DEVELOPER_ROLE_PROVIDERS:
                role = "developer"
            wire_messages.append({"role": role, "content": message.get("content") or ""})

        payload: Dict[str, Any] = {
            "model": model,
            "messages": wire_messages,
            "stream": stream,
        }
        if reasoning:
            payload["max_completion_tokens"] = max_tokens
        else:
            payload["temperature"] = temperature
            payload["max_tokens"] = max_tokens
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def parse_response(self, data: Dict[str, Any]) -> Optional[str]:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        return content if isinstance(content, str) and content.strip() else None

    def parse_stream_line(self, line: str) -> StreamChunk:
        line = line.strip()
        if not line.startswith("data:"):
            return StreamChunk(None)
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            return StreamChunk(None, done=True)
        try:
            data = json.loads(payload)
            delta = data["choices"][0].get("delta") or {}
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            return StreamChunk(None)
        content = delta.get("content")
        return StreamChunk(content if isinstance(content, str) and content else None)


class GeminiAdapter(ProviderAdapter):
    wire_format: Literal["gemini"] = "gemini"

    def build_url(self, model: str, stream: bool = False) -> str:
        return f"{self.base_url.rstrip('/')}/models/{model}:generateContent"

    def build_headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-goog-api-key"] = api_key
        return headers

    def build_request(
        self,
        messages: List[Message],
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
        stream: bool = False,
    ) -> Dict[str, Any]:
        contents = [
            {"role": turn["role"], "parts": [{"text": turn["content"]}]}
            for turn in _merge_turns(messages, assistant_role="model")
        ]
        generation_config: Dict[str, Any] = {
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
        }
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
        }
        system = _system_text(messages)
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    def parse_response(self, data: Dict[str, Any]) -> Optional[str]:
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None
        return text if isinstance(text, str) and text.strip() else None


class AnthropicAdapter(ProviderAdapter):
    wire_format: Literal["anthropic"] = "anthropic"

    def build_url(self, model: str, stream: bool = False) -> str:
        return f"{self.base_url.rstrip('/')}/messages"

    def build_headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if api_key:
            headers["x-api-key"] = api_key
        return headers

    def build_request(
        self,
        messages: List[Message],
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
        stream: bool = False,
    ) -> Dict[str, Any]:
        turns = _merge_turns(messages, assistant_role="assistant")
        if not turns or turns[0]["role"] != "user":
            turns.insert(0, {"role": "user", "content": "Bonjour"})

        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": turns,
        }
        system = _system_text(messages)
        if json_mode:
            system = f"{system}\n\n{JSON_ONLY_INSTRUCTION}" if system else JSON_ONLY_INSTRUCTION
        if system:
            payload["system"] = system
        return payload

    def parse_response(self, data: Dict[str, Any]) -> Optional[str]:
        blocks = data.get("content") if isinstance(data, dict) else None
        if not isinstance(blocks, list):
            return None
        for block in blocks:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                return text if isinstance(text, str) and text.strip() else None
        return None


ADAPTER_TYPES = {
    "openai": OpenAICompatibleAdapter,
    "gemini": GeminiAdapter,
    "anthropic": AnthropicAdapter,
}


# ============================================================================
# PROVIDER CATALOG
# ============================================================================

class ModelOption(BaseModel):
    id: str
    name: str


class ProviderDefinition(BaseModel):
    """Static description of a provider offered in the configuration UI."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    wire_format: WireFormat
    default_base_url: str
    default_model: str
    router_model: Optional[str] = None
    models: List[ModelOption] = Field(default_factory=list)
    key_prefix: Optional[str] = None
    needs_base_url: bool = False
    requires_auth: bool = True


def _models(*pairs) -> List[ModelOption]:
    return [ModelOption(id=model_id, name=name) for model_id, name in pairs]


PROVIDER_CATALOG: Dict[str, ProviderDefinition] = {
    definition.id: definition
    for definition in (
        ProviderDefinition(
            id="groq",
            name="Groq",
            description="Inférence ultra-rapide, tier gratuit limité",
            wire_format="openai",
            default_base_url="https://api.groq.com/openai/v1",
            default_model="llama-3.3-70b-versatile",
            router_model="llama-3.1-8b-instant",
            models=_models(
                ("llama-3.3-70b-versatile", "Llama 3.3 70B Versatile"),
                ("llama-3.1-8b-instant", "Llama 3.1 8B Instant"),
                ("gemma2-9b-it", "Gemma 2 9B IT"),
            ),
            key_prefix="gsk_",
        ),
        ProviderDefinition(
            id="openai",
            name="OpenAI",
            description="GPT-4o, GPT-4o-mini, o3",
            wire_format="openai",
            default_base_url="https://api.openai.com/v1",
            default_model="gpt-4o-mini",
            router_model="gpt-4o-mini",
            models=_models(
                ("gpt-4o-mini", "GPT-4o Mini"),
                ("gpt-4o", "GPT-4o"),
                ("o3-mini", "o3 Mini (raisonnement)"),
            ),
            key_prefix="sk-",
        ),
        ProviderDefinition(
            id="gemini",
            name="Google Gemini",
            description="Gemini 2.0 Flash, 1.5 Pro",
            wire_format="gemini",
            default_base_url="https://generativelanguage.googleapis.com/v1beta",
            default_model="gemini-2.0-flash-lite",
            router_model="gemini-2.0-flash-lite",
            models=_models(
                ("gemini-2.0-flash-lite", "Gemini 2.0 Flash Lite"),
                ("gemini-2.0-flash", "Gemini 2.0 Flash"),
                ("gemini-1.5-pro", "Gemini 1.5 Pro"),
            ),
            key_prefix="AIzaSy",
        ),
        ProviderDefinition(
            id="anthropic",
            name="Anthropic",
            description="Claude Sonnet, Claude Haiku",
            wire_format="anthropic",
            default_base_url="https://api.anthropic.com/v1",
            default_model="claude-sonnet-4-5-20250929",
            router_model="claude-haiku-4-5-20251001",
            models=_models(
                ("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5"),
                ("claude-haiku-4-5-20251001", "Claude Haiku 4.5"),
            ),
            key_prefix="sk-ant-",
        ),
        ProviderDefinition(
            id="openrouter",
            name="OpenRouter",
            description="Passerelle multi-providers",
            wire_format="openai",
            default_base_url="https://openrouter.ai/api/v1",
            default_model="meta-llama/llama-3.3-70b-instruct",
            models=_models(
                ("meta-llama/llama-3.3-70b-instruct", "Llama 3.3 70B"),
                ("qwen/qwen-2.5-72b-instruct", "Qwen 2.5 72B"),
            ),
            key_prefix="sk-or-",
        ),
        ProviderDefinition(
            id="mistral",
            name="Mistral AI",
            description="Modèles européens, performants en français",
            wire_format="openai",
            default_base_url="https://api.mistral.ai/v1",
            default_model="mistral-small-latest",
            router_model="mistral-small-latest",
            models=_models(
                ("mistral-small-latest", "Mistral Small"),
                ("mistral-large-latest", "Mistral Large"),
            ),
        ),
        ProviderDefinition(
            id="azure",
            name="Azure OpenAI",
            description="OpenAI via un endpoint Azure",
            wire_format="openai",
            default_base_url="",
            default_model="gpt-4o-mini",
            models=_models(("gpt-4o-mini", "GPT-4o Mini"), ("gpt-4o", "GPT-4o")),
            needs_base_url=True,
        ),
        ProviderDefinition(
            id="together",
            name="Together AI",
            description="Modèles open-source hébergés",
            wire_format="openai",
            default_base_url="https://api.together.xyz/v1",
            default_model="meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo",
            router_model="meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo",
            models=_models(
                ("meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo", "Llama 3.1 70B Turbo"),
                ("meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo", "Llama 3.1 8B Turbo"),
            ),
        ),
        ProviderDefinition(
            id="deepseek",
            name="DeepSeek",
            description="DeepSeek V3 et R1",
            wire_format="openai",
            default_base_url="https://api.deepseek.com",
            default_model="deepseek-chat",
            router_model="deepseek-chat",
            models=_models(
                ("deepseek-chat", "DeepSeek Chat (V3)"),
                ("deepseek-reasoner", "DeepSeek Reasoner (R1)"),
            ),
        ),
        ProviderDefinition(
            id="custom",
            name="Personnalisé",
            description="N'importe quel endpoint OpenAI-compatible",
            wire_format="openai",
            default_base_url="",
            default_model="",
            needs_base_url=True,
        ),
        ProviderDefinition(
            id="local",
            name="Local (Ollama)",
            description="Serveur local OpenAI-compatible, sans clé",
            wire_format="openai",
            default_base_url="http://localhost:11434/v1",
            default_model="qwen3:4b",
            router_model="qwen3:1.7b",
            requires_auth=False,
        ),
    )
}

# Key prefixes checked longest first so "sk-ant-" wins over "sk-".
KEY_PREFIXES = sorted(
    ((d.key_prefix, d.id) for d in PROVIDER_CATALOG.values() if d.key_prefix),
    key=lambda pair: len(pair[0]),
    reverse=True,
)


def get_provider_definition(provider_id: str) -> Optional[ProviderDefinition]:
    return PROVIDER_CATALOG.get((provider_id or "").lower())


def build_adapter(
    definition: ProviderDefinition,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    deployment: Optional[str] = None,
    api_version: Optional[str] = None,
    router_model: Optional[str] = None,
) -> ProviderAdapter:
    """Instantiate the adapter variant matching ``definition.wire_format``."""
    default_model = model or definition.default_model
    adapter_cls = ADAPTER_TYPES[definition.wire_format]
    return adapter_cls(
        kind=definition.id,
        name=definition.name,
        base_url=(base_url or definition.default_base_url).rstrip("/"),
        default_model=default_model,
        router_model=router_model or definition.router_model or default_model,
        deployment=deployment,
        api_version=api_version,
        requires_auth=definition.requires_auth,
    )
