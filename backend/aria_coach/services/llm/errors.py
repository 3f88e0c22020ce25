"""
Error taxonomy for the LLM layer.

Invocation code raises these internally; the public entry points
(``LLMInvoker.invoke``, ``FallbackOrchestrator.complete``) convert them into
``None`` plus an ``InvocationDiagnostic`` so that callers never see an
exception for a provider failure.
"""
from typing import Literal, Optional

from pydantic import BaseModel

ErrorKind = Literal[
    "transport",
    "auth",
    "rate_limit",
    "server",
    "client",
    "response",
    "capability",
    "circuit_open",
    "cancelled",
    "not_configured",
]

CapabilityCause = Literal[
    "no_network",
    "no_gpu",
    "out_of_memory",
    "model_not_found",
    "load_failed",
    "disabled",
]


class LLMError(Exception):
    """Base class for provider failures."""

    kind: ErrorKind = "transport"
    retryable: bool = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class LLMTransportError(LLMError):
    """Connection refused, DNS failure, timeout."""

    kind = "transport"
    retryable = True


class LLMServerError(LLMError):
    """HTTP 5xx."""

    kind = "server"
    retryable = True


class LLMRateLimitError(LLMError):
    """HTTP 429, optionally with a provider-suggested wait."""

    kind = "rate_limit"
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after_seconds = retry_after_seconds


class LLMAuthError(LLMError):
    """HTTP 401/403. Not retried; the chain escalates to the next tier."""

    kind = "auth"


class LLMClientError(LLMError):
    """Other HTTP 4xx (bad model name, malformed request)."""

    kind = "client"


class LLMResponseError(LLMError):
    """HTTP 200 with an empty or unparsable body."""

    kind = "response"


class LLMCircuitOpenError(LLMError):
    """Provider skipped because its circuit breaker is open."""

    kind = "circuit_open"


class LLMNotConfiguredError(LLMError):
    """The adapter needs a credential and none was supplied."""

    kind = "not_configured"


class LLMCancelledError(LLMError):
    kind = "cancelled"

    def __init__(self, message: str = "Invocation cancelled"):
        super().__init__(message)


class OnDeviceCapabilityError(LLMError):
    """The host cannot run the on-device engine."""

    kind = "capability"

    def __init__(self, cause: CapabilityCause, message: str):
        super().__init__(message)
        self.cause = cause


class InvocationDiagnostic(BaseModel):
    """Last failure recorded for one provider invocation."""

    provider: str
    model: str
    kind: ErrorKind
    message: str
    status_code: Optional[int] = None
    attempts: int = 0
    cause: Optional[CapabilityCause] = None

    @classmethod
    def from_error(
        cls,
        provider: str,
        model: str,
        error: LLMError,
        attempts: int,
    ) -> "InvocationDiagnostic":
        return cls(
            provider=provider,
            model=model,
            kind=error.kind,
            message=error.message,
            status_code=error.status_code,
            attempts=attempts,
            cause=getattr(error, "cause", None),
        )

    def describe(self) -> str:
        """Human-readable one-liner used in pipeline diagnostics."""
        if self.status_code:
            return f"{self.provider} ({self.model}): HTTP {self.status_code} {self.message}"
        return f"{self.provider} ({self.model}): {self.message}"
