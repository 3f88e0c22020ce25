"""
Response agent: writes the coach's answer from a prepared data context.

Two entry points:
- ``generate``: routed answer, temperature depends on the intent and the
  generated chart (if any) is described so the text complements it
- ``generate_direct``: answer without routing, from the general context
"""
from typing import AsyncIterator, List, Optional, Sequence

from aria_coach.core.logging import get_logger
from aria_coach.services.ai.charts import describe_points
from aria_coach.services.ai.prompts import CHART_COMPLEMENT_INSTRUCTIONS, COACH_SYSTEM_PROMPT
from aria_coach.services.ai.schema import ChartResult, ConversationMessage, RouterResult
from aria_coach.services.llm.fallback import (
    FallbackOrchestrator,
    FallbackOutcome,
    TierAttempt,
    get_fallback_orchestrator,
)
from aria_coach.services.llm.invocation import CancellationToken, InvocationOptions
from aria_coach.services.llm.providers import Message

logger = get_logger(__name__)

HISTORY_TURNS = 10
CHART_PROMPT_POINTS = 8
RESPONSE_MAX_TOKENS = 4096
DIRECT_TEMPERATURE = 0.4

_TEMPERATURE_BY_INTENT = {
    "strategic_advice": 0.5,
    "general": 0.6,
}


def response_temperature(intent: str) -> float:
    return _TEMPERATURE_BY_INTENT.get(intent, 0.3)


def chart_block(chart: ChartResult) -> str:
    return (
        "## Graphique Généré\n"
        f"Titre: {chart.spec.title}\n"
        f"Type: {chart.spec.chart_type}\n"
        f"Données:\n{describe_points(chart.data, CHART_PROMPT_POINTS)}\n"
        f"Insights: {' | '.join(chart.insights)}\n\n"
        f"{CHART_COMPLEMENT_INSTRUCTIONS}"
    )


def build_messages(
    question: str,
    context: str,
    period_label: str,
    history: Sequence[ConversationMessage],
    chart: Optional[ChartResult] = None,
) -> List[Message]:
    """Persona, data context, optional chart block, last turns, then the question."""
    messages: List[Message] = [
        {"role": "system", "content": COACH_SYSTEM_PROMPT},
        {"role": "system", "content": f"## Données Disponibles ({period_label})\n{context}"},
    ]
    if chart is not None:
        messages.append({"role": "system", "content": chart_block(chart)})
    for message in list(history)[-HISTORY_TURNS:]:
        messages.append({"role": message.role, "content": message.content})
    messages.append({"role": "user", "content": question})
    return messages


class ResponseAgent:
    def __init__(self, orchestrator: Optional[FallbackOrchestrator] = None):
        self._orchestrator = orchestrator or get_fallback_orchestrator()

    @staticmethod
    def routed_options(routing: RouterResult) -> InvocationOptions:
        return InvocationOptions(temperature=response_temperature(routing.intent), max_tokens=RESPONSE_MAX_TOKENS)

    @staticmethod
    def direct_options() -> InvocationOptions:
        return InvocationOptions(temperature=DIRECT_TEMPERATURE, max_tokens=RESPONSE_MAX_TOKENS, retries=1)

    async def generate(
        self,
        question: str,
        routing: RouterResult,
        context: str,
        period_label: str,
        history: Sequence[ConversationMessage],
        chart: Optional[ChartResult] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FallbackOutcome:
        messages = build_messages(question, context, period_label, history, chart)
        outcome = await self._orchestrator.complete_detailed(messages, self.routed_options(routing), cancel_token)
        if outcome.text is None:
            logger.warning("response_generation_failed", intent=routing.intent, attempts=len(outcome.attempts))
        return outcome

    async def generate_direct(
        self,
        question: str,
        context: str,
        period_label: str,
        history: Sequence[ConversationMessage],
        cancel_token: Optional[CancellationToken] = None,
    ) -> FallbackOutcome:
        messages = build_messages(question, context, period_label, history)
        outcome = await self._orchestrator.complete_detailed(messages, self.direct_options(), cancel_token)
        if outcome.text is None:
            logger.warning("direct_response_failed", attempts=len(outcome.attempts))
        return outcome

    def stream(
        self,
        messages: List[Message],
        options: InvocationOptions,
        cancel_token: Optional[CancellationToken] = None,
        attempts: Optional[List[TierAttempt]] = None,
    ) -> AsyncIterator[str]:
        return self._orchestrator.stream(messages, options, cancel_token, attempts)


_response_agent: Optional[ResponseAgent] = None


def get_response_agent() -> ResponseAgent:
    global _response_agent
    if _response_agent is None:
        _response_agent = ResponseAgent()
    return _response_agent
