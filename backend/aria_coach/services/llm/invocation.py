"""
LLM invocation layer.

Executes one call against one provider adapter over httpx:
- builds the adapter-specific request (reasoning models, role remapping and
  JSON mode are handled by the adapter)
- retries transport errors, 429 and 5xx with a non-decreasing, capped backoff
  that honours provider-suggested waits
- never retries auth errors (401/403) or other 4xx
- per-call timeout and cooperative cancellation through ``CancellationToken``
- one circuit breaker per provider endpoint

``invoke`` returns the completion text or None; the failure is kept as an
``InvocationDiagnostic``. ``stream`` yields incremental text and raises
``LLMError`` subclasses, leaving tier selection to the fallback orchestrator.
``probe`` is the user-triggered connection test and returns a structured result.

Environment configuration (read by ``get_llm_invoker``):
- LLM_TIMEOUT_SECONDS: per-request timeout (default: 60)
- LLM_MAX_RETRIES: retries after the first attempt (default: 1)
- LLM_MAX_RETRY_WAIT_SECONDS: cap for a single backoff wait (default: 30)
"""
import asyncio
import os
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from aria_coach.core.circuit_breaker import CircuitBreakerOpenError, CircuitBreakerRegistry
from aria_coach.core.logging import get_logger
from aria_coach.core.metrics import record_llm_error, record_llm_request, record_llm_retry
from aria_coach.services.llm.errors import (
    InvocationDiagnostic,
    LLMAuthError,
    LLMCancelledError,
    LLMCircuitOpenError,
    LLMClientError,
    LLMError,
    LLMNotConfiguredError,
    LLMRateLimitError,
    LLMResponseError,
    LLMServerError,
    LLMTransportError,
)
from aria_coach.services.llm.providers import Message, ProviderAdapter
from aria_coach.services.llm.retry import (
    DEFAULT_RETRY_WAIT_SECONDS,
    MAX_RETRY_WAIT_SECONDS,
    compute_backoff,
    parse_retry_after,
)

logger = get_logger(__name__)

UNREACHABLE_MESSAGE = (
    "Impossible de contacter le serveur. Vérifiez votre connexion internet et l'URL de l'API."
)

ClientFactory = Callable[[float], httpx.AsyncClient]


class InvocationOptions(BaseModel):
    temperature: float = 0.3
    max_tokens: int = 4096
    json_mode: bool = False
    model: Optional[str] = None
    retries: Optional[int] = None
    use_router_model: bool = False
    timeout_seconds: Optional[float] = None


class InvocationOutcome(BaseModel):
    text: Optional[str] = None
    provider: str
    model: str
    attempts: int = 0
    diagnostic: Optional[InvocationDiagnostic] = None


class ConfigTestResult(BaseModel):
    """Result of the user-triggered connection test."""

    success: bool
    provider: str
    model: Optional[str] = None
    latency_ms: int
    error: Optional[str] = None


class CancellationToken:
    """Cooperative cancellation shared by every call of one pipeline run."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise LLMCancelledError(f"Invocation cancelled: {self.reason}")


async def run_cancellable(awaitable: Awaitable[Any], cancel_token: Optional[CancellationToken]) -> Any:
    """Await ``awaitable`` unless ``cancel_token`` fires first (then raise LLMCancelledError)."""
    if cancel_token is None:
        return await awaitable
    cancel_token.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task in done:
        return task.result()
    raise LLMCancelledError(f"Invocation cancelled: {cancel_token.reason}")


def _default_client_factory(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


def http_error_from_response(adapter: ProviderAdapter, status_code: int, headers, body: str) -> LLMError:
    """Map an HTTP error response to the error taxonomy."""
    message = adapter.parse_error(status_code, body)
    if status_code in (401, 403):
        return LLMAuthError(message, status_code)
    if status_code == 429:
        return LLMRateLimitError(
            message,
            status_code,
            retry_after_seconds=parse_retry_after(headers, body),
        )
    if status_code >= 500:
        return LLMServerError(message, status_code)
    return LLMClientError(message, status_code)


class LLMInvoker:
    """Single-provider invocation with retry, backoff, timeout and cancellation."""

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        max_retries: int = 1,
        base_retry_wait_seconds: float = DEFAULT_RETRY_WAIT_SECONDS,
        max_retry_wait_seconds: float = MAX_RETRY_WAIT_SECONDS,
        client_factory: Optional[ClientFactory] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.base_retry_wait_seconds = base_retry_wait_seconds
        self.max_retry_wait_seconds = max_retry_wait_seconds
        self._client_factory = client_factory or _default_client_factory
        self._sleep = sleep or asyncio.sleep
        self.breakers = breakers or CircuitBreakerRegistry()
        self.last_diagnostic: Optional[InvocationDiagnostic] = None

    # ------------------------------------------------------------------ #
    # HTTP
    # ------------------------------------------------------------------ #

    async def _post(
        self,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        timeout: float,
    ) -> httpx.Response:
        try:
            async with self._client_factory(timeout) as client:
                return await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise LLMTransportError(f"Timeout after {timeout:.0f}s ({type(exc).__name__})") from exc
        except httpx.ConnectError as exc:
            raise LLMTransportError(UNREACHABLE_MESSAGE) from exc
        except httpx.HTTPError as exc:
            raise LLMTransportError(f"{type(exc).__name__}: {exc}") from exc

    async def _send(
        self,
        adapter: ProviderAdapter,
        credential: Optional[str],
        messages: List[Message],
        model: str,
        options: InvocationOptions,
        cancel_token: Optional[CancellationToken],
    ) -> str:
        payload = adapter.build_request(
            messages,
            model=model,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            json_mode=options.json_mode,
        )
        timeout = options.timeout_seconds or self.timeout_seconds
        response: httpx.Response = await run_cancellable(
            self._post(adapter.build_url(model), adapter.build_headers(credential), payload, timeout),
            cancel_token,
        )

        if response.status_code >= 400:
            raise http_error_from_response(adapter, response.status_code, response.headers, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMResponseError("Response body is not JSON", response.status_code) from exc

        text = adapter.parse_response(data)
        if text is None:
            raise LLMResponseError("Empty completion", response.status_code)
        return text

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def invoke(
        self,
        adapter: ProviderAdapter,
        credential: Optional[str],
        messages: List[Message],
        options: Optional[InvocationOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """Completion text, or None once retries are exhausted (see ``last_diagnostic``)."""
        outcome = await self.invoke_detailed(adapter, credential, messages, options, cancel_token)
        self.last_diagnostic = outcome.diagnostic
        return outcome.text

    async def invoke_detailed(
        self,
        adapter: ProviderAdapter,
        credential: Optional[str],
        messages: List[Message],
        options: Optional[InvocationOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> InvocationOutcome:
        options = options or InvocationOptions()
        model = adapter.model_for(options.model, options.use_router_model)
        retries = self.max_retries if options.retries is None else max(0, options.retries)
        breaker = self.breakers.get(f"{adapter.kind}|{adapter.base_url}", name=adapter.kind)

        start = time.monotonic()
        attempts = 0
        previous_wait = 0.0
        last_error: Optional[LLMError] = None

        if adapter.requires_auth and not credential:
            last_error = LLMNotConfiguredError(f"No credential configured for {adapter.name}")
        else:
            for attempt in range(retries + 1):
                try:
                    breaker.before_call()
                except CircuitBreakerOpenError as exc:
                    last_error = LLMCircuitOpenError(
                        f"Circuit open, retry in {exc.retry_in_seconds:.0f}s"
                    )
                    break

                attempts += 1
                try:
                    text = await self._send(adapter, credential, messages, model, options, cancel_token)
                except LLMError as exc:
                    last_error = exc
                    if exc.retryable:
                        breaker.record_failure()
                    else:
                        breaker.release()
                    logger.warning(
                        "llm_invoke_attempt_failed",
                        provider=adapter.kind,
                        model=model,
                        attempt=attempt + 1,
                        kind=exc.kind,
                        status_code=exc.status_code,
                        error=exc.message,
                    )
                    if not exc.retryable or attempt >= retries:
                        break

                    wait = compute_backoff(
                        attempt,
                        suggested=getattr(exc, "retry_after_seconds", None),
                        previous=previous_wait,
                        base=self.base_retry_wait_seconds,
                        cap=self.max_retry_wait_seconds,
                    )
                    previous_wait = wait
                    record_llm_retry(adapter.kind, exc.kind)
                    try:
                        await run_cancellable(self._sleep(wait), cancel_token)
                    except LLMCancelledError as cancelled:
                        last_error = cancelled
                        break
                else:
                    breaker.record_success()
                    record_llm_request(adapter.kind, model, "success", time.monotonic() - start)
                    return InvocationOutcome(
                        text=text,
                        provider=adapter.kind,
                        model=model,
                        attempts=attempts,
                    )

        outcome = "cancelled" if isinstance(last_error, LLMCancelledError) else "failure"
        record_llm_request(adapter.kind, model, outcome, time.monotonic() - start)
        record_llm_error(adapter.kind, last_error.kind)
        diagnostic = InvocationDiagnostic.from_error(adapter.name, model, last_error, attempts)
        logger.warning(
            "llm_invoke_failed",
            provider=adapter.kind,
            model=model,
            attempts=attempts,
            kind=last_error.kind,
            error=last_error.message,
        )
        return InvocationOutcome(provider=adapter.kind, model=model, attempts=attempts, diagnostic=diagnostic)

    async def stream(
        self,
        adapter: ProviderAdapter,
        credential: Optional[str],
        messages: List[Message],
        options: Optional[InvocationOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """
        Yield completion text incrementally.

        OpenAI-compatible adapters stream SSE deltas; other wire formats run a
        regular invocation and yield the full text once.

        Raises:
            LLMError: on any failure before or during the stream.
        """
        options = options or InvocationOptions()
        model = adapter.model_for(options.model, options.use_router_model)

        if not adapter.supports_streaming:
            outcome = await self.invoke_detailed(adapter, credential, messages, options, cancel_token)
            if outcome.text is None:
                raise _error_from_diagnostic(outcome.diagnostic)
            yield outcome.text
            return

        if adapter.requires_auth and not credential:
            raise LLMNotConfiguredError(f"No credential configured for {adapter.name}")

        breaker = self.breakers.get(f"{adapter.kind}|{adapter.base_url}", name=adapter.kind)
        try:
            breaker.before_call()
        except CircuitBreakerOpenError as exc:
            raise LLMCircuitOpenError(f"Circuit open, retry in {exc.retry_in_seconds:.0f}s") from exc

        payload = adapter.build_request(
            messages,
            model=model,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            json_mode=options.json_mode,
            stream=True,
        )
        timeout = options.timeout_seconds or self.timeout_seconds
        start = time.monotonic()
        emitted = False
        try:
            async with self._client_factory(timeout) as client:
                async with client.stream(
                    "POST",
                    adapter.build_url(model, stream=True),
                    headers=adapter.build_headers(credential),
                    json=payload,
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise http_error_from_response(adapter, response.status_code, response.headers, body)
                    async for line in response.aiter_lines():
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled()
                        chunk = adapter.parse_stream_line(line)
                        if chunk.done:
                            break
                        if chunk.text:
                            emitted = True
                            yield chunk.text
            if not emitted:
                raise LLMResponseError("Empty stream")
        except LLMError as exc:
            if exc.retryable:
                breaker.record_failure()
            else:
                breaker.release()
            record_llm_error(adapter.kind, exc.kind)
            record_llm_request(adapter.kind, model, "failure", time.monotonic() - start)
            raise
        except httpx.TimeoutException as exc:
            breaker.record_failure()
            record_llm_error(adapter.kind, "transport")
            raise LLMTransportError(f"Timeout after {timeout:.0f}s") from exc
        except httpx.HTTPError as exc:
            breaker.record_failure()
            record_llm_error(adapter.kind, "transport")
            raise LLMTransportError(f"{type(exc).__name__}: {exc}") from exc

        breaker.record_success()
        record_llm_request(adapter.kind, model, "success", time.monotonic() - start)

    async def probe(self, adapter: ProviderAdapter, credential: Optional[str]) -> ConfigTestResult:
        """Minimal request (max_tokens=1) that validates URL, credential and model."""
        model = adapter.default_model
        payload = adapter.build_request(
            [{"role": "user", "content": "Hi"}],
            model=model,
            temperature=0.0,
            max_tokens=1,
        )
        start = time.perf_counter()
        try:
            response = await self._post(
                adapter.build_url(model),
                adapter.build_headers(credential),
                payload,
                timeout=min(self.timeout_seconds, 30.0),
            )
        except LLMTransportError as exc:
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.info("llm_probe_failed", provider=adapter.kind, model=model, kind=exc.kind)
            return ConfigTestResult(
                success=False,
                provider=adapter.name,
                model=model,
                latency_ms=latency_ms,
                error=exc.message,
            )

        latency_ms = int((time.perf_counter() - start) * 1000)
        if response.status_code < 400:
            logger.info("llm_probe_succeeded", provider=adapter.kind, model=model, latency_ms=latency_ms)
            return ConfigTestResult(success=True, provider=adapter.name, model=model, latency_ms=latency_ms)

        error = http_error_from_response(adapter, response.status_code, response.headers, response.text)
        logger.info(
            "llm_probe_failed",
            provider=adapter.kind,
            model=model,
            kind=error.kind,
            status_code=response.status_code,
        )
        return ConfigTestResult(
            success=False,
            provider=adapter.name,
            model=model,
            latency_ms=latency_ms,
            error=error.message or f"HTTP {response.status_code}",
        )


_ERROR_BY_KIND = {
    "transport": LLMTransportError,
    "server": LLMServerError,
    "auth": LLMAuthError,
    "client": LLMClientError,
    "response": LLMResponseError,
    "circuit_open": LLMCircuitOpenError,
    "not_configured": LLMNotConfiguredError,
}


def _error_from_diagnostic(diagnostic: Optional[InvocationDiagnostic]) -> LLMError:
    if diagnostic is None:
        return LLMResponseError("Empty completion")
    if diagnostic.kind == "cancelled":
        return LLMCancelledError(diagnostic.message)
    if diagnostic.kind == "rate_limit":
        return LLMRateLimitError(diagnostic.message, diagnostic.status_code)
    error_cls = _ERROR_BY_KIND.get(diagnostic.kind, LLMError)
    return error_cls(diagnostic.message, diagnostic.status_code)


_llm_invoker: Optional[LLMInvoker] = None


def get_llm_invoker() -> LLMInvoker:
    """Global invoker configured from the environment."""
    global _llm_invoker
    if _llm_invoker is None:
        _llm_invoker = LLMInvoker(
            timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "60") or "60"),
            max_retries=int(os.getenv("LLM_MAX_RETRIES", "1") or "1"),
            max_retry_wait_seconds=float(
                os.getenv("LLM_MAX_RETRY_WAIT_SECONDS", str(MAX_RETRY_WAIT_SECONDS))
                or MAX_RETRY_WAIT_SECONDS
            ),
        )
    return _llm_invoker
