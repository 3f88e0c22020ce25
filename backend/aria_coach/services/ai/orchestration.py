"""
Coach pipeline.

Flow for one question:
- Phase 1: intent routing (router agent)
- Context building, scoped by the routing result
- Phase 2A: chart creation / modification when the routing asks for one
- Phase 2B: answer writing

Degradation, in order:
- routed answer (source="llm")
- direct answer from the general context when routing or the routed answer
  failed (source="direct")
- explicit diagnostic listing each tier's failure (source="diagnostic")

The pipeline never raises for LLM failures and never fabricates a
data-backed answer. Conversation histories are not mutated here; use
``answer_in_session`` to serialise questions of one conversation and append
the turn once the result is complete.
"""
import time
from typing import AsyncIterator, List, Literal, Optional, Sequence

from pydantic import BaseModel

from aria_coach.core.logging import get_logger
from aria_coach.core.metrics import record_pipeline_result
from aria_coach.services.ai.agents.chart import ChartAgent, get_chart_agent
from aria_coach.services.ai.agents.response import ResponseAgent, build_messages, get_response_agent
from aria_coach.services.ai.agents.router import IntentRouterAgent, get_router_agent
from aria_coach.services.ai.charts import ChartHistory
from aria_coach.services.ai.context import BuiltContext, ContextBuilder
from aria_coach.services.ai.conversation import ConversationSession
from aria_coach.services.ai.schema import (
    ChartResult,
    ConversationMessage,
    PipelineResult,
    PractitionerCard,
    RouterResult,
)
from aria_coach.services.crm.dataset import CRMDataset, get_crm_dataset
from aria_coach.services.crm.knowledge import get_knowledge_base
from aria_coach.services.crm.models import Objectives, Practitioner, UpcomingVisit
from aria_coach.services.llm.errors import LLMCancelledError, LLMError
from aria_coach.services.llm.fallback import (
    FallbackExhaustedError,
    FallbackOutcome,
    TierAttempt,
    describe_attempts,
)
from aria_coach.services.llm.invocation import CancellationToken

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Requête annulée."
INTERRUPTED_SUFFIX = "\n\n_(Réponse interrompue : le moteur IA a cessé de répondre.)_"


def diagnostic_message(attempts: Sequence[TierAttempt]) -> str:
    """User-facing text for the case where no tier produced an answer."""
    trail = describe_attempts(list(attempts)) if attempts else "- aucun moteur n'a pu être contacté"
    return (
        "Je ne peux pas répondre pour le moment : aucun moteur IA n'a répondu.\n\n"
        f"Détail des tentatives :\n{trail}\n\n"
        "Vérifiez la clé API et le modèle dans les réglages, ou démarrez le serveur local (Ollama)."
    )


class PipelineEvent(BaseModel):
    """Event emitted by ``CoachPipeline.stream_question``."""

    type: Literal["chart", "delta", "done"]
    text: Optional[str] = None
    chart: Optional[ChartResult] = None
    result: Optional[PipelineResult] = None


class CoachPipeline:
    def __init__(
        self,
        context_builder: ContextBuilder,
        router: Optional[IntentRouterAgent] = None,
        chart_agent: Optional[ChartAgent] = None,
        response_agent: Optional[ResponseAgent] = None,
    ):
        self.context_builder = context_builder
        self._router = router or get_router_agent()
        self._chart_agent = chart_agent or get_chart_agent()
        self._response_agent = response_agent or get_response_agent()

    def _builder_for(self, crm_data: Optional[CRMDataset]) -> ContextBuilder:
        if crm_data is None:
            return self.context_builder
        return ContextBuilder(
            directory=crm_data,
            search=crm_data,
            actions=crm_data,
            knowledge=self.context_builder.knowledge,
            today=crm_data.today,
        )

    @staticmethod
    def _last_assistant(history: Sequence[ConversationMessage]) -> Optional[str]:
        for message in reversed(history):
            if message.role == "assistant":
                return message.content
        return None

    async def _prepare(
        self,
        builder: ContextBuilder,
        question: str,
        history: Sequence[ConversationMessage],
        period_label: str,
        entities: Optional[Sequence[Practitioner]],
        events: Sequence[UpcomingVisit],
        objectives: Optional[Objectives],
        chart_history: Optional[ChartHistory],
        cancel_token: Optional[CancellationToken],
    ):
        """Routing, context and chart. Routing and chart are None when unavailable."""
        routing = await self._router.route(question, chart_history, self._last_assistant(history), cancel_token)
        if routing is None:
            return None, None, None

        context = builder.build_context(routing, question, period_label, entities, events, objectives)
        chart = None
        if routing.needs_chart:
            population = list(entities) if entities is not None else builder.directory.all_practitioners()
            chart = await self._chart_agent.generate(
                question, routing, chart_history, population, builder.today, cancel_token
            )
        return routing, context, chart

    def _cards(self, builder: ContextBuilder, routing: Optional[RouterResult]) -> Optional[List[PractitionerCard]]:
        if routing is None or routing.intent != "practitioner_info" or not routing.search_terms.names:
            return None
        return builder.practitioner_cards(routing.search_terms.names) or None

    def _routed_result(
        self,
        text: str,
        builder: ContextBuilder,
        routing: RouterResult,
        context: BuiltContext,
        chart: Optional[ChartResult],
        tier: Optional[str],
    ) -> PipelineResult:
        return PipelineResult(
            text_content=text,
            chart=chart,
            entities=self._cards(builder, routing),
            suggestions=chart.suggestions if chart is not None else None,
            source="llm",
            rag_sources=context.rag_sources or None,
            used_rag=context.used_rag,
            provider_tier=tier,
        )

    @staticmethod
    def _direct_result(outcome: FallbackOutcome, context: BuiltContext) -> PipelineResult:
        return PipelineResult(
            text_content=outcome.text,
            source="direct",
            rag_sources=context.rag_sources or None,
            used_rag=context.used_rag,
            provider_tier=outcome.tier.value if outcome.tier else None,
        )

    @staticmethod
    def _diagnostic_result(attempts: Sequence[TierAttempt], cancelled: bool = False) -> PipelineResult:
        return PipelineResult(
            text_content=CANCELLED_MESSAGE if cancelled else diagnostic_message(attempts),
            source="diagnostic",
        )

    async def process_question(
        self,
        question: str,
        history: Sequence[ConversationMessage],
        period_label: str,
        entities: Optional[Sequence[Practitioner]] = None,
        events: Sequence[UpcomingVisit] = (),
        objectives: Optional[Objectives] = None,
        crm_data: Optional[CRMDataset] = None,
        chart_history: Optional[ChartHistory] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        """
        Answer one question.

        Args:
            history: previous turns of the conversation (oldest first)
            period_label: label of the reporting period ("ce mois", ...)
            entities: practitioners in scope (defaults to the whole dataset)
            events: upcoming visits
            objectives: the user's objectives for the period
            crm_data: dataset to answer from instead of the pipeline's own
            chart_history: charts of the conversation, most recent first

        Returns:
            PipelineResult; never raises for LLM failures.
        """
        start = time.time()
        builder = self._builder_for(crm_data)

        routing, context, chart = await self._prepare(
            builder, question, history, period_label, entities, events, objectives, chart_history, cancel_token
        )

        if routing is not None and context is not None:
            outcome = await self._response_agent.generate(
                question, routing, context.text, period_label, history, chart, cancel_token
            )
            if outcome.text is not None:
                result = self._routed_result(
                    outcome.text, builder, routing, context, chart,
                    outcome.tier.value if outcome.tier else None,
                )
                return self._finish(result, start, intent=routing.intent)
            logger.info("pipeline_routed_answer_failed", intent=routing.intent)
        else:
            logger.info("pipeline_routing_unavailable")

        if cancel_token is not None and cancel_token.cancelled:
            return self._finish(self._diagnostic_result([], cancelled=True), start)

        general = builder.build_general_context(question, period_label, entities, events, objectives)
        direct = await self._response_agent.generate_direct(question, general.text, period_label, history, cancel_token)
        if direct.text is not None:
            return self._finish(self._direct_result(direct, general), start)

        cancelled = cancel_token is not None and cancel_token.cancelled
        return self._finish(self._diagnostic_result(direct.attempts, cancelled=cancelled), start)

    async def stream_question(
        self,
        question: str,
        history: Sequence[ConversationMessage],
        period_label: str,
        entities: Optional[Sequence[Practitioner]] = None,
        events: Sequence[UpcomingVisit] = (),
        objectives: Optional[Objectives] = None,
        crm_data: Optional[CRMDataset] = None,
        chart_history: Optional[ChartHistory] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[PipelineEvent]:
        """
        Same flow as ``process_question``, emitting the chart as soon as it is
        ready and the answer as text deltas. The last event is always ``done``
        and carries the complete ``PipelineResult``.
        """
        start = time.time()
        builder = self._builder_for(crm_data)

        routing, context, chart = await self._prepare(
            builder, question, history, period_label, entities, events, objectives, chart_history, cancel_token
        )
        if chart is not None:
            yield PipelineEvent(type="chart", chart=chart)

        if routing is not None and context is not None:
            messages = build_messages(question, context.text, period_label, history, chart)
            options = self._response_agent.routed_options(routing)
        else:
            context = builder.build_general_context(question, period_label, entities, events, objectives)
            messages = build_messages(question, context.text, period_label, history)
            options = self._response_agent.direct_options()

        attempts: List[TierAttempt] = []
        parts: List[str] = []
        try:
            async for piece in self._response_agent.stream(messages, options, cancel_token, attempts):
                parts.append(piece)
                yield PipelineEvent(type="delta", text=piece)
        except LLMCancelledError:
            if parts:
                text = "".join(parts) + INTERRUPTED_SUFFIX
                result = PipelineResult(text_content=text, chart=chart, source="llm" if routing else "direct")
            else:
                result = self._diagnostic_result(attempts, cancelled=True)
            yield PipelineEvent(type="done", result=self._finish(result, start))
            return
        except FallbackExhaustedError as exc:
            attempts = exc.attempts
        except LLMError as exc:
            logger.warning("pipeline_stream_interrupted", kind=exc.kind, error=exc.message, emitted=len(parts))
            text = "".join(parts) + INTERRUPTED_SUFFIX
            result = PipelineResult(text_content=text, chart=chart, source="llm" if routing else "direct")
            yield PipelineEvent(type="done", result=self._finish(result, start))
            return

        successful = next((a for a in reversed(attempts) if a.success), None)
        tier = successful.tier.value if successful is not None else None
        if parts:
            if routing is not None:
                result = self._routed_result("".join(parts), builder, routing, context, chart, tier)
            else:
                result = PipelineResult(
                    text_content="".join(parts),
                    source="direct",
                    rag_sources=context.rag_sources or None,
                    used_rag=context.used_rag,
                    provider_tier=tier,
                )
            yield PipelineEvent(type="done", result=self._finish(result, start))
            return

        # Nothing streamed: one unrouted, non-streaming attempt before the diagnostic.
        general = builder.build_general_context(question, period_label, entities, events, objectives)
        direct = await self._response_agent.generate_direct(question, general.text, period_label, history, cancel_token)
        if direct.text is not None:
            yield PipelineEvent(type="delta", text=direct.text)
            result = self._direct_result(direct, general)
        else:
            cancelled = cancel_token is not None and cancel_token.cancelled
            result = self._diagnostic_result(direct.attempts or attempts, cancelled=cancelled)
        yield PipelineEvent(type="done", result=self._finish(result, start))

    async def answer_in_session(
        self,
        session: ConversationSession,
        question: str,
        period_label: str,
        entities: Optional[Sequence[Practitioner]] = None,
        events: Sequence[UpcomingVisit] = (),
        objectives: Optional[Objectives] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        """``process_question`` against a session, appending the turn afterwards."""
        async with session.lock:
            result = await self.process_question(
                question,
                session.messages,
                period_label,
                entities=entities,
                events=events,
                objectives=objectives,
                chart_history=session.chart_history,
                cancel_token=cancel_token,
            )
            session.record_turn(question, result)
            return result

    @staticmethod
    def _finish(result: PipelineResult, start: float, intent: Optional[str] = None) -> PipelineResult:
        duration = time.time() - start
        record_pipeline_result(result.source, duration)
        logger.info(
            "pipeline_completed",
            source=result.source,
            intent=intent,
            provider_tier=result.provider_tier,
            has_chart=result.chart is not None,
            used_rag=result.used_rag,
            duration_ms=int(duration * 1000),
        )
        return result


_coach_pipeline: Optional[CoachPipeline] = None


def get_coach_pipeline() -> CoachPipeline:
    """Global pipeline over the configured CRM dataset and knowledge base."""
    global _coach_pipeline
    if _coach_pipeline is None:
        dataset = get_crm_dataset()
        _coach_pipeline = CoachPipeline(
            ContextBuilder(
                directory=dataset,
                search=dataset,
                actions=dataset,
                knowledge=get_knowledge_base(),
            )
        )
    return _coach_pipeline
