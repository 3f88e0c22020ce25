"""
Intent routing agent.

Responsibilities:
- Classify a question into one of the coach intents
- Extract the data scope, search terms and chart parameters
- Enforce the JSON schema via pydantic validation

Returns None whenever the model is unavailable or its output does not
validate; the pipeline then answers through the direct path.
"""
from typing import Optional

from aria_coach.core.logging import get_logger
from aria_coach.core.metrics import record_router_result
from aria_coach.services.ai.charts import ChartHistory, describe_points
from aria_coach.services.ai.prompts import NO_CHART_CONTEXT, ROUTER_SYSTEM_PROMPT
from aria_coach.services.ai.schema import (
    RouterResult,
    SchemaValidationError,
    parse_json_object,
    validate_router_payload,
)
from aria_coach.services.llm.fallback import FallbackOrchestrator, get_fallback_orchestrator
from aria_coach.services.llm.invocation import CancellationToken, InvocationOptions

logger = get_logger(__name__)

ROUTER_OPTIONS = InvocationOptions(temperature=0.0, max_tokens=800, json_mode=True, use_router_model=True)
LAST_ASSISTANT_EXCERPT = 200
CHART_CONTEXT_POINTS = 5


def chart_context(history: Optional[ChartHistory]) -> str:
    """Short description of the latest chart for the router prompt."""
    latest = history.latest() if history is not None else None
    if latest is None:
        return NO_CHART_CONTEXT
    return (
        f"Dernier graphique: \"{latest.question}\"\n"
        f"Type: {latest.spec.chart_type} | Titre: {latest.spec.title}\n"
        f"Données: \n{describe_points(latest.data, CHART_CONTEXT_POINTS)}"
    )


class IntentRouterAgent:
    """Classifies questions and extracts routing parameters."""

    def __init__(self, orchestrator: Optional[FallbackOrchestrator] = None):
        self._orchestrator = orchestrator or get_fallback_orchestrator()

    async def route(
        self,
        question: str,
        chart_history: Optional[ChartHistory] = None,
        last_assistant_message: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[RouterResult]:
        if not question or not question.strip():
            return None

        system_prompt = ROUTER_SYSTEM_PROMPT.replace("{CHART_CONTEXT}", chart_context(chart_history))
        user_content = f"Question: {question}"
        if last_assistant_message:
            user_content = (
                f"[Dernier message assistant: \"{last_assistant_message[:LAST_ASSISTANT_EXCERPT]}...\"]\n\n"
                + user_content
            )

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]
        raw = await self._orchestrator.complete(messages, ROUTER_OPTIONS, cancel_token)
        if raw is None:
            record_router_result("llm_unavailable")
            logger.warning("router_llm_unavailable")
            return None

        try:
            payload = parse_json_object(raw, agent="router")
        except SchemaValidationError as exc:
            record_router_result("invalid_json")
            logger.warning("router_invalid_json", error=str(exc), raw=raw[:500])
            return None

        try:
            routing = validate_router_payload(payload)
        except SchemaValidationError as exc:
            record_router_result("schema_invalid")
            logger.warning("router_schema_invalid", error=str(exc), payload=payload)
            return None

        record_router_result("success", routing.intent)
        logger.info(
            "router_completed",
            intent=routing.intent,
            data_scope=routing.data_scope,
            needs_chart=routing.needs_chart,
        )
        return routing


_router_agent: Optional[IntentRouterAgent] = None


def get_router_agent() -> IntentRouterAgent:
    global _router_agent
    if _router_agent is None:
        _router_agent = IntentRouterAgent()
    return _router_agent
