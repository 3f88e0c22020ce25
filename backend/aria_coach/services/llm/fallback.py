"""
Fallback orchestration across LLM tiers.

Tiers run strictly in sequence and the first non-empty completion wins:

1. configured   - the provider resolved from the stored configuration
2. local        - the default local OpenAI-compatible server (Ollama);
                  first tier when no credential is configured
3. on_device    - the in-process engine, only when the host has GPU compute;
                  the model is loaded lazily and awaited

Every tier's outcome is recorded as a ``TierAttempt``; when all tiers fail
the trail feeds the user-facing diagnostic instead of an exception.
"""
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Tuple

from pydantic import BaseModel

from aria_coach.core.logging import get_logger
from aria_coach.core.metrics import record_fallback_tier
from aria_coach.services.llm.config_store import StoredConfiguration, get_config_store
from aria_coach.services.llm.errors import (
    InvocationDiagnostic,
    LLMCancelledError,
    LLMError,
    OnDeviceCapabilityError,
)
from aria_coach.services.llm.invocation import (
    CancellationToken,
    InvocationOptions,
    LLMInvoker,
    get_llm_invoker,
)
from aria_coach.services.llm.on_device import OnDeviceEngine, get_on_device_engine
from aria_coach.services.llm.providers import Message, ProviderAdapter
from aria_coach.services.llm.registry import LOCAL_PROVIDER, ProviderResolver, get_provider_resolver

logger = get_logger(__name__)

ON_DEVICE_PROVIDER_NAME = "On-device"
# Small models degrade past this budget; the engine caps generation length.
ON_DEVICE_MAX_TOKENS = 1024


class Tier(str, Enum):
    CONFIGURED = "configured"
    LOCAL = "local"
    ON_DEVICE = "on_device"


class TierAttempt(BaseModel):
    tier: Tier
    provider: str
    model: str
    success: bool
    diagnostic: Optional[InvocationDiagnostic] = None


class FallbackOutcome(BaseModel):
    text: Optional[str] = None
    tier: Optional[Tier] = None
    attempts: List[TierAttempt] = []

    def describe_failures(self) -> str:
        return describe_attempts(self.attempts)


class FallbackExhaustedError(Exception):
    """Raised by ``stream`` when no tier produced output."""

    def __init__(self, attempts: List[TierAttempt]):
        super().__init__(describe_attempts(attempts) or "No LLM tier available")
        self.attempts = attempts


def describe_attempts(attempts: List[TierAttempt]) -> str:
    lines = []
    for attempt in attempts:
        if attempt.success or attempt.diagnostic is None:
            continue
        lines.append(f"- {attempt.diagnostic.describe()}")
    return "\n".join(lines)


class FallbackOrchestrator:
    """Runs a request through configured, local and on-device tiers."""

    def __init__(
        self,
        resolver: ProviderResolver,
        invoker: LLMInvoker,
        config_loader: Callable[[], Optional[StoredConfiguration]],
        on_device: Optional[OnDeviceEngine] = None,
    ):
        self.resolver = resolver
        self.invoker = invoker
        self.config_loader = config_loader
        self.on_device = on_device
        self.last_attempts: List[TierAttempt] = []

    def plan(self) -> List[Tuple[Tier, ProviderAdapter, Optional[str]]]:
        """Remote tiers to try, in order, with the credential each one uses."""
        config = self.resolver.normalize(self.config_loader())
        if config is not None and config.provider == LOCAL_PROVIDER:
            return [(Tier.LOCAL, self.resolver.resolve(config), None)]
        local = (Tier.LOCAL, self.resolver.local_adapter(), None)
        if config is None:
            return [local]
        return [(Tier.CONFIGURED, self.resolver.resolve(config), config.api_key), local]

    def _on_device_unavailable(self) -> Optional[TierAttempt]:
        if self.on_device is None:
            return None
        if self.on_device.is_supported():
            return None
        cause = "disabled" if not self.on_device.enabled else "no_gpu"
        error = OnDeviceCapabilityError(cause, "Moteur embarqué indisponible sur cet appareil")
        return TierAttempt(
            tier=Tier.ON_DEVICE,
            provider=ON_DEVICE_PROVIDER_NAME,
            model=self.on_device.default_model_id,
            success=False,
            diagnostic=InvocationDiagnostic.from_error(
                ON_DEVICE_PROVIDER_NAME, self.on_device.default_model_id, error, 0
            ),
        )

    async def complete(
        self,
        messages: List[Message],
        options: Optional[InvocationOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """First successful completion across tiers, or None (see ``last_attempts``)."""
        outcome = await self.complete_detailed(messages, options, cancel_token)
        return outcome.text

    async def complete_detailed(
        self,
        messages: List[Message],
        options: Optional[InvocationOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FallbackOutcome:
        options = options or InvocationOptions()
        attempts: List[TierAttempt] = []

        for tier, adapter, credential in self.plan():
            if cancel_token is not None and cancel_token.cancelled:
                break
            result = await self.invoker.invoke_detailed(adapter, credential, messages, options, cancel_token)
            success = result.text is not None
            attempts.append(TierAttempt(
                tier=tier,
                provider=adapter.name,
                model=result.model,
                success=success,
                diagnostic=result.diagnostic,
            ))
            record_fallback_tier(tier.value, "success" if success else "failure")
            if success:
                return self._finish(FallbackOutcome(text=result.text, tier=tier, attempts=attempts))
            logger.info("fallback_tier_failed", tier=tier.value, provider=adapter.kind, model=result.model)
            if result.diagnostic is not None and result.diagnostic.kind == "cancelled":
                return self._finish(FallbackOutcome(attempts=attempts))

        if cancel_token is not None and cancel_token.cancelled:
            return self._finish(FallbackOutcome(attempts=attempts))

        text = await self._try_on_device(messages, options, cancel_token, attempts)
        if text is not None:
            return self._finish(FallbackOutcome(text=text, tier=Tier.ON_DEVICE, attempts=attempts))

        logger.warning("fallback_exhausted", tiers=[a.tier.value for a in attempts])
        return self._finish(FallbackOutcome(attempts=attempts))

    async def _try_on_device(
        self,
        messages: List[Message],
        options: InvocationOptions,
        cancel_token: Optional[CancellationToken],
        attempts: List[TierAttempt],
    ) -> Optional[str]:
        unavailable = self._on_device_unavailable()
        if unavailable is not None:
            attempts.append(unavailable)
            record_fallback_tier(Tier.ON_DEVICE.value, "skipped")
            return None
        if self.on_device is None:
            return None

        engine = self.on_device
        model = engine.model_id or engine.default_model_id
        try:
            text = await engine.complete(
                messages,
                temperature=options.temperature,
                max_tokens=min(options.max_tokens, ON_DEVICE_MAX_TOKENS),
                cancel_token=cancel_token,
            )
        except LLMError as exc:
            attempts.append(TierAttempt(
                tier=Tier.ON_DEVICE,
                provider=ON_DEVICE_PROVIDER_NAME,
                model=model,
                success=False,
                diagnostic=InvocationDiagnostic.from_error(ON_DEVICE_PROVIDER_NAME, model, exc, 1),
            ))
            record_fallback_tier(Tier.ON_DEVICE.value, "failure")
            logger.warning("fallback_tier_failed", tier=Tier.ON_DEVICE.value, kind=exc.kind, error=exc.message)
            return None

        attempts.append(TierAttempt(
            tier=Tier.ON_DEVICE,
            provider=ON_DEVICE_PROVIDER_NAME,
            model=engine.model_id or model,
            success=True,
        ))
        record_fallback_tier(Tier.ON_DEVICE.value, "success")
        return text

    def _finish(self, outcome: FallbackOutcome) -> FallbackOutcome:
        self.last_attempts = outcome.attempts
        if outcome.tier is not None:
            logger.info("fallback_tier_succeeded", tier=outcome.tier.value, attempts=len(outcome.attempts))
        return outcome

    async def stream(
        self,
        messages: List[Message],
        options: Optional[InvocationOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        attempts: Optional[List[TierAttempt]] = None,
    ) -> AsyncIterator[str]:
        """
        Yield incremental text from the first tier that produces output.

        A tier that fails before its first chunk hands over to the next one;
        a failure after output has been emitted is raised as is.

        Raises:
            FallbackExhaustedError: no tier produced any output
            LLMCancelledError: the token was cancelled
        """
        options = options or InvocationOptions()
        trail: List[TierAttempt] = attempts if attempts is not None else []

        for tier, adapter, credential in self.plan():
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            emitted = False
            model = adapter.model_for(options.model, options.use_router_model)
            try:
                async for piece in self.invoker.stream(adapter, credential, messages, options, cancel_token):
                    emitted = True
                    yield piece
            except LLMCancelledError:
                raise
            except LLMError as exc:
                if emitted:
                    raise
                trail.append(TierAttempt(
                    tier=tier,
                    provider=adapter.name,
                    model=model,
                    success=False,
                    diagnostic=InvocationDiagnostic.from_error(adapter.name, model, exc, 1),
                ))
                record_fallback_tier(tier.value, "failure")
                logger.info("fallback_tier_failed", tier=tier.value, provider=adapter.kind, kind=exc.kind)
                continue
            trail.append(TierAttempt(tier=tier, provider=adapter.name, model=model, success=True))
            record_fallback_tier(tier.value, "success")
            self.last_attempts = trail
            return

        unavailable = self._on_device_unavailable()
        if unavailable is not None or self.on_device is None:
            if unavailable is not None:
                trail.append(unavailable)
                record_fallback_tier(Tier.ON_DEVICE.value, "skipped")
            self.last_attempts = trail
            raise FallbackExhaustedError(trail)

        engine = self.on_device
        model = engine.model_id or engine.default_model_id
        emitted = False
        try:
            async for piece in engine.stream_complete(
                messages,
                temperature=options.temperature,
                max_tokens=min(options.max_tokens, ON_DEVICE_MAX_TOKENS),
                cancel_token=cancel_token,
            ):
                emitted = True
                yield piece
        except LLMCancelledError:
            raise
        except LLMError as exc:
            trail.append(TierAttempt(
                tier=Tier.ON_DEVICE,
                provider=ON_DEVICE_PROVIDER_NAME,
                model=model,
                success=False,
                diagnostic=InvocationDiagnostic.from_error(ON_DEVICE_PROVIDER_NAME, model, exc, 1),
            ))
            record_fallback_tier(Tier.ON_DEVICE.value, "failure")
            self.last_attempts = trail
            if emitted:
                raise
            raise FallbackExhaustedError(trail) from exc

        trail.append(TierAttempt(tier=Tier.ON_DEVICE, provider=ON_DEVICE_PROVIDER_NAME, model=model, success=True))
        record_fallback_tier(Tier.ON_DEVICE.value, "success")
        self.last_attempts = trail


_fallback_orchestrator: Optional[FallbackOrchestrator] = None


def get_fallback_orchestrator() -> FallbackOrchestrator:
    """Global orchestrator wired to the process-wide store, resolver, invoker and engine."""
    global _fallback_orchestrator
    if _fallback_orchestrator is None:
        _fallback_orchestrator = FallbackOrchestrator(
            resolver=get_provider_resolver(),
            invoker=get_llm_invoker(),
            config_loader=get_config_store().load,
            on_device=get_on_device_engine(),
        )
    return _fallback_orchestrator
