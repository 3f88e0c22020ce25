"""
Prometheus metrics for the coach service.

Metric families:
- RED metrics for the HTTP surface
- LLM invocation metrics (per provider and model)
- Fallback tier outcomes and pipeline result sources
- Router / chart agent outcomes
- Provider resolution cache hits and misses
- Process resource gauges (psutil)

Naming follows Prometheus conventions: counters end in ``_total``,
durations in ``_seconds``.
"""
from typing import Optional

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from aria_coach.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

# ============================================================================
# LLM INVOCATION METRICS
# ============================================================================

llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of LLM invocations",
    ["provider", "model", "outcome"],
    registry=registry,
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "LLM invocation latency in seconds (all attempts included)",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0],
    registry=registry,
)

llm_retries_total = Counter(
    "llm_retries_total",
    "Total number of LLM retry attempts",
    ["provider", "reason"],
    registry=registry,
)

llm_errors_total = Counter(
    "llm_errors_total",
    "Total number of LLM errors by kind",
    ["provider", "kind"],
    registry=registry,
)

llm_fallback_tier_total = Counter(
    "llm_fallback_tier_total",
    "Fallback chain attempts per tier",
    ["tier", "outcome"],
    registry=registry,
)

provider_resolution_cache_total = Counter(
    "provider_resolution_cache_total",
    "Provider resolution cache lookups",
    ["result"],
    registry=registry,
)

on_device_model_loaded = Gauge(
    "on_device_model_loaded",
    "Whether an on-device model is loaded (1) or not (0)",
    registry=registry,
)

# ============================================================================
# PIPELINE METRICS
# ============================================================================

router_results_total = Counter(
    "router_results_total",
    "Intent router outcomes",
    ["outcome"],
    registry=registry,
)

router_intents_total = Counter(
    "router_intents_total",
    "Intents returned by the router",
    ["intent"],
    registry=registry,
)

chart_generation_total = Counter(
    "chart_generation_total",
    "Chart generation outcomes",
    ["mode", "outcome"],
    registry=registry,
)

pipeline_results_total = Counter(
    "pipeline_results_total",
    "Coach pipeline results by source",
    ["source"],
    registry=registry,
)

pipeline_duration_seconds = Histogram(
    "pipeline_duration_seconds",
    "End-to-end coach pipeline latency in seconds",
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0, 160.0],
    registry=registry,
)

# ============================================================================
# RESOURCE METRICS
# ============================================================================

system_cpu_usage_percent = Gauge(
    "system_cpu_usage_percent",
    "System CPU usage percentage",
    registry=registry,
)

system_memory_usage_bytes = Gauge(
    "system_memory_usage_bytes",
    "System memory usage in bytes",
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """
    Collapse dynamic path segments to keep label cardinality low.

    /coach/conversations/abc123 -> /coach/conversations/{conversation_id}
    """
    if "?" in path:
        path = path.split("?")[0]
    if path.startswith("/coach/conversations/"):
        return "/coach/conversations/{conversation_id}"
    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record RED metrics for one HTTP request."""
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_llm_request(provider: str, model: str, outcome: str, duration_seconds: float) -> None:
    """
    Record one LLM invocation.

    Args:
        provider: Provider id (groq, openai, local, on_device, ...)
        model: Model name actually sent on the wire
        outcome: success | failure | cancelled
        duration_seconds: Wall time across all attempts
    """
    llm_requests_total.labels(provider=provider, model=model, outcome=outcome).inc()
    llm_request_duration_seconds.labels(provider=provider).observe(duration_seconds)


def record_llm_retry(provider: str, reason: str) -> None:
    llm_retries_total.labels(provider=provider, reason=reason).inc()


def record_llm_error(provider: str, kind: str) -> None:
    """kind: transport | auth | rate_limit | response | capability | circuit_open | cancelled."""
    llm_errors_total.labels(provider=provider, kind=kind).inc()


def record_fallback_tier(tier: str, outcome: str) -> None:
    llm_fallback_tier_total.labels(tier=tier, outcome=outcome).inc()


def record_resolution_cache(hit: bool) -> None:
    provider_resolution_cache_total.labels(result="hit" if hit else "miss").inc()


def set_on_device_model_loaded(loaded: bool) -> None:
    on_device_model_loaded.set(1 if loaded else 0)


def record_router_result(outcome: str, intent: Optional[str] = None) -> None:
    """outcome: success | llm_unavailable | invalid_json | schema_invalid."""
    router_results_total.labels(outcome=outcome).inc()
    if intent:
        router_intents_total.labels(intent=intent).inc()


def record_chart_generation(mode: str, outcome: str) -> None:
    """mode: create | modify; outcome: success | unchanged | llm_unavailable | invalid_spec."""
    chart_generation_total.labels(mode=mode, outcome=outcome).inc()


def record_pipeline_result(source: str, duration_seconds: Optional[float] = None) -> None:
    pipeline_results_total.labels(source=source).inc()
    if duration_seconds is not None:
        pipeline_duration_seconds.observe(duration_seconds)


def update_resource_metrics() -> None:
    """Refresh CPU and memory gauges; called on each scrape."""
    try:
        system_cpu_usage_percent.set(psutil.cpu_percent(interval=0.1))
        system_memory_usage_bytes.set(psutil.virtual_memory().used)
    except Exception as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    """Prometheus text exposition of the registry."""
    update_resource_metrics()
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
