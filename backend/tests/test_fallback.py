"""
Unit tests for the three-tier fallback chain.

Tests verify:
- Tier order: configured provider, local server, on-device engine
- A successful tier stops the chain (later tiers are never touched)
- Exhaustion returns every tier's diagnostic, without raising
- Streaming switches tier only before the first chunk
"""
import pytest

from aria_coach.services.llm.config_store import StoredConfiguration
from aria_coach.services.llm.errors import InvocationDiagnostic, LLMServerError, LLMTransportError
from aria_coach.services.llm.fallback import (
    FallbackExhaustedError,
    FallbackOrchestrator,
    Tier,
    describe_attempts,
)
from aria_coach.services.llm.invocation import InvocationOutcome
from aria_coach.services.llm.on_device import OnDeviceEngine
from aria_coach.services.llm.registry import ProviderResolver, ResolutionCache

MESSAGES = [{"role": "user", "content": "Bonjour"}]
GROQ = StoredConfiguration(provider="groq", api_key="gsk_abcdefghijklmnop", model="llama-3.3-70b-versatile")


class DummyInvoker:
    """Answers per provider kind; None means the provider failed."""

    def __init__(self, answers, stream_plan=None):
        self.answers = answers
        self.stream_plan = stream_plan or {}
        self.calls = []

    async def invoke_detailed(self, adapter, credential, messages, options=None, cancel_token=None):
        self.calls.append(adapter.kind)
        text = self.answers.get(adapter.kind)
        if text is not None:
            return InvocationOutcome(text=text, provider=adapter.kind, model=adapter.default_model, attempts=1)
        return InvocationOutcome(
            provider=adapter.kind,
            model=adapter.default_model,
            attempts=2,
            diagnostic=InvocationDiagnostic(
                provider=adapter.name,
                model=adapter.default_model,
                kind="server",
                message="overloaded",
                status_code=503,
                attempts=2,
            ),
        )

    async def stream(self, adapter, credential, messages, options=None, cancel_token=None):
        self.calls.append(adapter.kind)
        pieces, error = self.stream_plan.get(adapter.kind, ([], LLMTransportError("refused")))
        for piece in pieces:
            yield piece
        if error is not None:
            raise error


class FakeBackend:
    def __init__(self, device="cuda", text="Réponse embarquée"):
        self.device = device
        self.text = text
        self.loaded = []
        self.generated = 0

    def detect_device(self):
        return self.device

    def available_memory_mb(self, device):
        return 8000

    def load(self, model_id, device):
        self.loaded.append(model_id)
        return object()

    def generate(self, handle, messages, temperature, max_tokens, should_stop, on_text=None):
        self.generated += 1
        if on_text is not None:
            for word in self.text.split(" "):
                on_text(word + " ")
        return self.text

    def release(self, handle):
        pass


def make_orchestrator(invoker, config=GROQ, backend=None):
    engine = OnDeviceEngine(backend=backend or FakeBackend(device=None))
    return FallbackOrchestrator(
        resolver=ProviderResolver(cache=ResolutionCache()),
        invoker=invoker,
        config_loader=lambda: config,
        on_device=engine,
    ), engine


def test_plan_without_configuration_is_local_only():
    orchestrator, _ = make_orchestrator(DummyInvoker({}), config=None)

    assert [tier for tier, _, _ in orchestrator.plan()] == [Tier.LOCAL]


def test_plan_with_configuration():
    orchestrator, _ = make_orchestrator(DummyInvoker({}))

    plan = orchestrator.plan()

    assert [tier for tier, _, _ in plan] == [Tier.CONFIGURED, Tier.LOCAL]
    assert plan[0][2] == GROQ.api_key
    assert plan[1][2] is None


def test_plan_with_local_configuration():
    local = StoredConfiguration(provider="local", api_key="", model="llama3.2", base_url="http://gpu-box:11434/v1")
    orchestrator, _ = make_orchestrator(DummyInvoker({}), config=local)

    plan = orchestrator.plan()

    assert [tier for tier, _, _ in plan] == [Tier.LOCAL]
    adapter = plan[0][1]
    assert adapter.base_url == "http://gpu-box:11434/v1"
    assert adapter.default_model == "llama3.2"


@pytest.mark.asyncio
async def test_configured_tier_answers():
    invoker = DummyInvoker({"groq": "Réponse Groq"})
    orchestrator, _ = make_orchestrator(invoker)

    outcome = await orchestrator.complete_detailed(MESSAGES)

    assert outcome.text == "Réponse Groq"
    assert outcome.tier == Tier.CONFIGURED
    assert invoker.calls == ["groq"]


@pytest.mark.asyncio
async def test_local_answers_and_on_device_untouched():
    backend = FakeBackend()
    invoker = DummyInvoker({"local": "Réponse locale"})
    orchestrator, _ = make_orchestrator(invoker, backend=backend)

    outcome = await orchestrator.complete_detailed(MESSAGES)

    assert outcome.text == "Réponse locale"
    assert outcome.tier == Tier.LOCAL
    assert invoker.calls == ["groq", "local"]
    assert [a.success for a in outcome.attempts] == [False, True]
    assert backend.loaded == []
    assert backend.generated == 0


@pytest.mark.asyncio
async def test_on_device_is_last_resort():
    backend = FakeBackend()
    orchestrator, engine = make_orchestrator(DummyInvoker({}), backend=backend)

    outcome = await orchestrator.complete_detailed(MESSAGES)

    assert outcome.text == "Réponse embarquée"
    assert outcome.tier == Tier.ON_DEVICE
    assert backend.loaded == [engine.default_model_id]
    assert [a.tier for a in outcome.attempts] == [Tier.CONFIGURED, Tier.LOCAL, Tier.ON_DEVICE]


@pytest.mark.asyncio
async def test_all_tiers_fail_returns_diagnostics():
    orchestrator, _ = make_orchestrator(DummyInvoker({}))

    text = await orchestrator.complete(MESSAGES)
    attempts = orchestrator.last_attempts

    assert text is None
    assert [a.tier for a in attempts] == [Tier.CONFIGURED, Tier.LOCAL, Tier.ON_DEVICE]
    assert attempts[-1].diagnostic.kind == "capability"
    assert attempts[-1].diagnostic.cause == "no_gpu"
    summary = describe_attempts(attempts)
    assert "Groq" in summary
    assert "HTTP 503" in summary


@pytest.mark.asyncio
async def test_disabled_on_device_reports_cause():
    orchestrator, engine = make_orchestrator(DummyInvoker({}), backend=FakeBackend())
    engine.enabled = False

    outcome = await orchestrator.complete_detailed(MESSAGES)

    assert outcome.text is None
    assert outcome.attempts[-1].diagnostic.cause == "disabled"


@pytest.mark.asyncio
async def test_stream_switches_tier_before_first_chunk():
    invoker = DummyInvoker({}, stream_plan={
        "groq": ([], LLMServerError("overloaded", 503)),
        "local": (["Bon", "jour"], None),
    })
    orchestrator, _ = make_orchestrator(invoker)
    attempts = []

    pieces = [piece async for piece in orchestrator.stream(MESSAGES, attempts=attempts)]

    assert pieces == ["Bon", "jour"]
    assert [(a.tier, a.success) for a in attempts] == [(Tier.CONFIGURED, False), (Tier.LOCAL, True)]


@pytest.mark.asyncio
async def test_stream_error_after_output_is_raised():
    invoker = DummyInvoker({}, stream_plan={"groq": (["Bon"], LLMTransportError("reset"))})
    orchestrator, _ = make_orchestrator(invoker)
    pieces = []

    with pytest.raises(LLMTransportError):
        async for piece in orchestrator.stream(MESSAGES):
            pieces.append(piece)

    assert pieces == ["Bon"]
    assert invoker.calls == ["groq"]


@pytest.mark.asyncio
async def test_stream_exhausted():
    orchestrator, _ = make_orchestrator(DummyInvoker({}))

    with pytest.raises(FallbackExhaustedError) as exc_info:
        async for _ in orchestrator.stream(MESSAGES):
            pass

    assert len(exc_info.value.attempts) == 3


@pytest.mark.asyncio
async def test_stream_on_device():
    orchestrator, _ = make_orchestrator(DummyInvoker({}), backend=FakeBackend(text="Un deux"))

    pieces = [piece async for piece in orchestrator.stream(MESSAGES)]

    assert "".join(pieces).strip() == "Un deux"
    assert orchestrator.last_attempts[-1].tier == Tier.ON_DEVICE
    assert orchestrator.last_attempts[-1].success
