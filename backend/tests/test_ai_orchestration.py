"""
Unit tests for the coach pipeline:
- routed answers with charts, practitioner cards and knowledge sources
- degradation to the direct answer, then to the diagnostic
- streaming events
- session turns appended only once the result is complete

These tests use scripted orchestrators only and do NOT perform real HTTP calls.
"""
import json

import pytest

from aria_coach.services.ai.agents.chart import ChartAgent
from aria_coach.services.ai.agents.response import ResponseAgent
from aria_coach.services.ai.agents.router import IntentRouterAgent
from aria_coach.services.ai.context import ContextBuilder
from aria_coach.services.ai.conversation import ConversationSession
from aria_coach.services.ai.orchestration import (
    CANCELLED_MESSAGE,
    INTERRUPTED_SUFFIX,
    CoachPipeline,
    diagnostic_message,
)
from aria_coach.services.crm.dataset import CRMDataset
from aria_coach.services.llm.errors import LLMServerError
from aria_coach.services.llm.fallback import FallbackExhaustedError
from aria_coach.services.llm.invocation import CancellationToken
from tests.fakes import TODAY, ScriptedOrchestrator, make_practitioner

CHART_ROUTING = json.dumps({
    "intent": "chart_create",
    "dataScope": "aggregated",
    "chartParams": {"groupBy": "city"},
})

CITY_SPEC = json.dumps({
    "chartType": "bar",
    "title": "Volume par ville",
    "query": {
        "groupBy": "city",
        "metrics": [{"name": "volume", "field": "volumeL", "aggregation": "sum", "format": "k"}],
        "sortBy": "volume",
    },
})


def make_pipeline(dataset, knowledge_base, router=None, chart=None, response=None) -> CoachPipeline:
    return CoachPipeline(
        ContextBuilder(directory=dataset, search=dataset, actions=dataset, knowledge=knowledge_base, today=TODAY),
        router=IntentRouterAgent(router or ScriptedOrchestrator()),
        chart_agent=ChartAgent(chart or ScriptedOrchestrator()),
        response_agent=ResponseAgent(response or ScriptedOrchestrator()),
    )


class TestProcessQuestion:
    @pytest.mark.asyncio
    async def test_routed_answer_with_chart(self, dataset, knowledge_base):
        response = ScriptedOrchestrator(replies=["Lyon concentre la moitié du volume."])
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            router=ScriptedOrchestrator(replies=[CHART_ROUTING]),
            chart=ScriptedOrchestrator(replies=[CITY_SPEC]),
            response=response,
        )

        result = await pipeline.process_question("Volume par ville", [], "ce mois")

        assert result.source == "llm"
        assert result.text_content == "Lyon concentre la moitié du volume."
        assert result.chart.data[0] == {"name": "Lyon", "volume": 296}
        assert result.suggestions == result.chart.suggestions
        assert result.provider_tier == "configured"
        messages, options = response.calls[0]
        assert any("## Graphique Généré" in m["content"] for m in messages)
        assert messages[-1] == {"role": "user", "content": "Volume par ville"}
        assert options.temperature == 0.3

    @pytest.mark.asyncio
    async def test_practitioner_info_returns_cards(self, dataset, knowledge_base):
        routing = json.dumps({
            "intent": "practitioner_info",
            "dataScope": "specific",
            "searchTerms": {"names": ["Martin"]},
        })
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            router=ScriptedOrchestrator(replies=[routing]),
            response=ScriptedOrchestrator(replies=["Le Dr Martin est un KOL lyonnais."]),
        )

        result = await pipeline.process_question("Parle-moi du Dr Martin", [], "ce mois")

        assert result.chart is None
        assert [card.id for card in result.entities] == ["pr_1"]
        assert result.entities[0].days_since_last_visit == 47

    @pytest.mark.asyncio
    async def test_knowledge_question_reports_sources(self, dataset, knowledge_base):
        routing = json.dumps({"intent": "knowledge_query", "dataScope": "knowledge"})
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            router=ScriptedOrchestrator(replies=[routing]),
            response=ScriptedOrchestrator(replies=["L'OLD est indiquée sous 55 mmHg."]),
        )

        result = await pipeline.process_question("Quand prescrire l'oxygénothérapie ?", [], "ce mois")

        assert result.used_rag is True
        assert result.rag_sources[0].source == "HAS"

    @pytest.mark.asyncio
    async def test_routing_unavailable_answers_directly(self, dataset, knowledge_base):
        response = ScriptedOrchestrator(replies=["Votre territoire progresse."])
        pipeline = make_pipeline(dataset, knowledge_base, response=response)

        result = await pipeline.process_question("Comment va mon territoire ?", [], "ce mois")

        assert result.source == "direct"
        assert result.text_content == "Votre territoire progresse."
        assert result.chart is None
        assert result.provider_tier == "configured"
        assert response.calls[0][1].temperature == 0.4

    @pytest.mark.asyncio
    async def test_failed_routed_answer_falls_back_to_direct(self, dataset, knowledge_base):
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            router=ScriptedOrchestrator(replies=['{"intent": "general"}']),
            response=ScriptedOrchestrator(replies=[None, "Réponse directe."]),
        )

        result = await pipeline.process_question("Bonjour", [], "ce mois")

        assert result.source == "direct"
        assert result.text_content == "Réponse directe."

    @pytest.mark.asyncio
    async def test_all_tiers_failed_gives_diagnostic(self, dataset, knowledge_base):
        pipeline = make_pipeline(dataset, knowledge_base)

        result = await pipeline.process_question("Quels KOLs voir cette semaine ?", [], "ce mois")

        assert result.source == "diagnostic"
        assert result.chart is None
        assert "aucun moteur IA n'a répondu" in result.text_content
        assert "Groq (model): HTTP 503 Service Unavailable" in result.text_content
        assert "Local (Ollama) (model): Impossible de contacter le serveur." in result.text_content

    @pytest.mark.asyncio
    async def test_cancelled_question(self, dataset, knowledge_base):
        token = CancellationToken()
        token.cancel()
        response = ScriptedOrchestrator(replies=["ne doit pas être utilisée"])
        pipeline = make_pipeline(dataset, knowledge_base, response=response)

        result = await pipeline.process_question("Bonjour", [], "ce mois", cancel_token=token)

        assert result.source == "diagnostic"
        assert result.text_content == CANCELLED_MESSAGE
        assert response.calls == []

    @pytest.mark.asyncio
    async def test_crm_data_override(self, dataset, knowledge_base):
        other = CRMDataset([make_practitioner(id="p_paris", city="Paris", volumeL=12000)], today=TODAY)
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            router=ScriptedOrchestrator(replies=[CHART_ROUTING]),
            chart=ScriptedOrchestrator(replies=[CITY_SPEC]),
            response=ScriptedOrchestrator(replies=["Paris uniquement."]),
        )

        result = await pipeline.process_question("Volume par ville", [], "ce mois", crm_data=other)

        assert result.chart.data == [{"name": "Paris", "volume": 12}]

    def test_diagnostic_without_attempts(self):
        assert "aucun moteur n'a pu être contacté" in diagnostic_message([])


class TestStreamQuestion:
    @pytest.mark.asyncio
    async def test_chart_then_deltas_then_done(self, dataset, knowledge_base):
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            router=ScriptedOrchestrator(replies=[CHART_ROUTING]),
            chart=ScriptedOrchestrator(replies=[CITY_SPEC]),
            response=ScriptedOrchestrator(stream_pieces=["Lyon ", "domine."]),
        )

        events = [event async for event in pipeline.stream_question("Volume par ville", [], "ce mois")]

        assert [event.type for event in events] == ["chart", "delta", "delta", "done"]
        result = events[-1].result
        assert result.text_content == "Lyon domine."
        assert result.source == "llm"
        assert result.chart == events[0].chart
        assert result.provider_tier == "local"

    @pytest.mark.asyncio
    async def test_exhausted_stream_gives_diagnostic(self, dataset, knowledge_base):
        failures = ScriptedOrchestrator().failures
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            response=ScriptedOrchestrator(stream_error=FallbackExhaustedError(failures)),
        )

        events = [event async for event in pipeline.stream_question("Bonjour", [], "ce mois")]

        assert [event.type for event in events] == ["done"]
        assert events[0].result.source == "diagnostic"
        assert "HTTP 503" in events[0].result.text_content

    @pytest.mark.asyncio
    async def test_exhausted_stream_retries_without_streaming(self, dataset, knowledge_base):
        failures = ScriptedOrchestrator().failures
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            response=ScriptedOrchestrator(replies=["Réponse complète."], stream_error=FallbackExhaustedError(failures)),
        )

        events = [event async for event in pipeline.stream_question("Bonjour", [], "ce mois")]

        assert [event.type for event in events] == ["delta", "done"]
        assert events[-1].result.source == "direct"
        assert events[-1].result.text_content == "Réponse complète."

    @pytest.mark.asyncio
    async def test_interrupted_stream_keeps_partial_text(self, dataset, knowledge_base):
        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            response=ScriptedOrchestrator(stream_pieces=["Début de réponse"], stream_error=LLMServerError("boom", 502)),
        )

        events = [event async for event in pipeline.stream_question("Bonjour", [], "ce mois")]

        assert [event.type for event in events] == ["delta", "done"]
        assert events[-1].result.text_content == "Début de réponse" + INTERRUPTED_SUFFIX
        assert events[-1].result.source == "direct"


class TestAnswerInSession:
    @pytest.mark.asyncio
    async def test_turn_recorded_after_result(self, dataset, knowledge_base):
        session = ConversationSession("c1")
        seen = []

        class ObservingOrchestrator(ScriptedOrchestrator):
            async def complete_detailed(self, messages, options=None, cancel_token=None):
                seen.append(len(session.messages))
                return await super().complete_detailed(messages, options, cancel_token)

        pipeline = make_pipeline(
            dataset,
            knowledge_base,
            router=ScriptedOrchestrator(replies=[CHART_ROUTING]),
            chart=ScriptedOrchestrator(replies=[CITY_SPEC]),
            response=ObservingOrchestrator(replies=["Lyon en tête."]),
        )

        result = await pipeline.answer_in_session(session, "Volume par ville", "ce mois")

        assert seen == [0]
        assert [m.content for m in session.messages] == ["Volume par ville", "Lyon en tête."]
        assert session.chart_history.latest().spec == result.chart.spec

    @pytest.mark.asyncio
    async def test_history_feeds_next_question(self, dataset, knowledge_base):
        session = ConversationSession("c1")
        response = ScriptedOrchestrator(replies=["Première réponse.", "Deuxième réponse."])
        pipeline = make_pipeline(dataset, knowledge_base, response=response)

        await pipeline.answer_in_session(session, "Première question", "ce mois")
        await pipeline.answer_in_session(session, "Deuxième question", "ce mois")

        second_messages = response.calls[1][0]
        contents = [m["content"] for m in second_messages]
        assert contents[-3:] == ["Première question", "Première réponse.", "Deuxième question"]
        assert len(session.messages) == 4
