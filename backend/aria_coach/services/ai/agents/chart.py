"""
Chart agent.

Responsibilities:
- Ask the model for a chart specification (new chart) or for a modified copy
  of the latest chart
- Validate the specification and force the limit and chart type the user
  asked for explicitly
- Execute the specification locally against the practitioner dataset

Data points always come from local execution, never from the model.
"""
from datetime import date
from typing import Optional, Sequence

from aria_coach.core.logging import get_logger
from aria_coach.core.metrics import record_chart_generation
from aria_coach.services.ai.charts import (
    ChartHistory,
    apply_delta,
    apply_overrides,
    build_chart,
    chart_data_context,
    explicit_chart_type,
    explicit_limit,
)
from aria_coach.services.ai.prompts import CHART_MODIFY_PROMPT, CHART_SYSTEM_PROMPT
from aria_coach.services.ai.schema import (
    ChartHistoryEntry,
    ChartResult,
    ChartSpecification,
    RouterResult,
    SchemaValidationError,
    parse_json_object,
    validate_chart_payload,
)
from aria_coach.services.crm.models import Practitioner
from aria_coach.services.llm.fallback import FallbackOrchestrator, get_fallback_orchestrator
from aria_coach.services.llm.invocation import CancellationToken, InvocationOptions
from aria_coach.services.llm.providers import Message

logger = get_logger(__name__)

CHART_OPTIONS = InvocationOptions(temperature=0.0, max_tokens=1500, json_mode=True)


def creation_hints(routing: RouterResult) -> str:
    params = routing.chart_params
    hints = ""
    if params.limit:
        hints += f"\nATTENTION: L'utilisateur demande EXACTEMENT {params.limit} éléments."
    if params.chart_type:
        hints += f"\nATTENTION: L'utilisateur veut un graphique de type \"{params.chart_type}\"."
    if params.group_by:
        hints += f"\nATTENTION: Grouper par \"{params.group_by}\"."
    if routing.search_terms.is_kol is True:
        hints += "\nATTENTION: Filtrer uniquement les KOLs."
    return hints


class ChartAgent:
    """Creates and modifies chart specifications."""

    def __init__(self, orchestrator: Optional[FallbackOrchestrator] = None):
        self._orchestrator = orchestrator or get_fallback_orchestrator()

    async def generate(
        self,
        question: str,
        routing: RouterResult,
        chart_history: Optional[ChartHistory],
        practitioners: Sequence[Practitioner],
        today: Optional[date] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[ChartResult]:
        """
        Chart for ``question``, or None when no valid specification was obtained.

        A ``chart_modify`` intent without any chart in history is handled as a
        new chart.
        """
        previous = chart_history.latest() if chart_history is not None else None
        if routing.intent == "chart_modify" and previous is not None:
            return await self._modify(question, routing, previous, practitioners, today, cancel_token)
        return await self._create(question, routing, practitioners, today, cancel_token)

    async def _create(
        self,
        question: str,
        routing: RouterResult,
        practitioners: Sequence[Practitioner],
        today: Optional[date],
        cancel_token: Optional[CancellationToken],
    ) -> Optional[ChartResult]:
        data_context = chart_data_context(practitioners)
        messages = [
            {"role": "system", "content": CHART_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"{data_context}\n\nDEMANDE: \"{question}\"{creation_hints(routing)}"
                    "\n\nGénère la spécification JSON du graphique."
                ),
            },
        ]
        spec = await self._request_spec(messages, mode="create", cancel_token=cancel_token)
        if spec is None:
            return None

        spec = apply_overrides(
            spec,
            chart_type=routing.chart_params.chart_type or explicit_chart_type(question),
            limit=routing.chart_params.limit or explicit_limit(question),
        )
        record_chart_generation("create", "success")
        return build_chart(spec, practitioners, today, generated_by_llm=True)

    async def _modify(
        self,
        question: str,
        routing: RouterResult,
        previous: ChartHistoryEntry,
        practitioners: Sequence[Practitioner],
        today: Optional[date],
        cancel_token: Optional[CancellationToken],
    ) -> Optional[ChartResult]:
        delta = routing.chart_modification or question
        current = previous.spec.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        system_prompt = (
            CHART_MODIFY_PROMPT
            .replace("{CURRENT_CHART}", current)
            .replace("{MODIFICATION}", delta)
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {
                "role": "user",
                "content": (
                    f"Question originale: \"{previous.question}\"\n"
                    f"Modification demandée: \"{question}\"\n\n"
                    f"{chart_data_context(practitioners)}"
                ),
            },
        ]
        spec = await self._request_spec(messages, mode="modify", cancel_token=cancel_token)
        generated_by_llm = spec is not None

        if spec is None:
            # Without a model, only the modifications the sentence grammar covers are applied.
            spec = apply_delta(previous.spec, delta)
            if spec is previous.spec:
                record_chart_generation("modify", "unchanged")
                return None
            logger.info("chart_modified_locally", delta=delta, chart_type=spec.chart_type)

        spec = apply_overrides(spec, chart_type=routing.chart_params.chart_type, limit=routing.chart_params.limit)
        spec = apply_delta(spec, delta)
        record_chart_generation("modify", "success")
        return build_chart(spec, practitioners, today, generated_by_llm=generated_by_llm)

    async def _request_spec(
        self,
        messages: Sequence[Message],
        mode: str,
        cancel_token: Optional[CancellationToken],
    ) -> Optional[ChartSpecification]:
        raw = await self._orchestrator.complete(list(messages), CHART_OPTIONS, cancel_token)
        if raw is None:
            record_chart_generation(mode, "llm_unavailable")
            logger.warning("chart_llm_unavailable", mode=mode)
            return None
        try:
            return validate_chart_payload(parse_json_object(raw, agent="chart"))
        except SchemaValidationError as exc:
            record_chart_generation(mode, "invalid_spec")
            logger.warning("chart_spec_invalid", mode=mode, error=str(exc), raw=raw[:500])
            return None


_chart_agent: Optional[ChartAgent] = None


def get_chart_agent() -> ChartAgent:
    global _chart_agent
    if _chart_agent is None:
        _chart_agent = ChartAgent()
    return _chart_agent
