"""
Unit tests for the context builder.

Tests verify:
- Territory header is always present
- Each data scope selects its section (specific, filtered, aggregated, full, knowledge)
- Keyword enrichments (actions, schedule, performance)
- Knowledge passages are retrieved at most once per question
- Practitioner cards carry the days since the last visit
"""
import pytest

from aria_coach.services.ai.context import ContextBuilder
from aria_coach.services.ai.schema import RouterResult
from aria_coach.services.crm.models import Objectives
from tests.fakes import TODAY


class CountingKnowledge:
    def __init__(self, inner):
        self.inner = inner
        self.retrievals = 0

    def should_use(self, question):
        return self.inner.should_use(question)

    def retrieve_knowledge(self, query, top_k=4, max_chars=3000):
        self.retrievals += 1
        return self.inner.retrieve_knowledge(query, top_k=top_k, max_chars=max_chars)


@pytest.fixture
def builder(dataset, knowledge_base) -> ContextBuilder:
    return ContextBuilder(
        directory=dataset,
        search=dataset,
        actions=dataset,
        knowledge=knowledge_base,
        today=TODAY,
    )


def routing(**payload) -> RouterResult:
    payload.setdefault("intent", "data_query")
    return RouterResult.model_validate(payload)


class TestTerritoryHeader:
    def test_default_objective(self, builder):
        context = builder.build_context(routing(dataScope="full"), "Point global", "ce mois")

        assert context.text.startswith("## Territoire (ce mois)\n")
        assert "- 6 praticiens (4 pneumo, 2 MG)" in context.text
        assert "- Visites ce mois: 2/60 (3%)" in context.text

    def test_objectives_are_used(self, builder):
        objectives = Objectives(visits_monthly=40, visits_completed=10)

        context = builder.build_context(
            routing(dataScope="aggregated"), "Où en est mon objectif ?", "octobre", objectives=objectives
        )

        assert "- Visites octobre: 10/40 (25%)" in context.text
        assert "## Performance" in context.text
        assert "- Objectif visites mensuel: 10/40 (25%)" in context.text


class TestScopes:
    def test_specific_exact_match(self, builder):
        context = builder.build_context(
            routing(intent="practitioner_info", dataScope="specific", searchTerms={"names": ["martin"]}),
            "Parle-moi du Dr Martin",
            "ce mois",
        )

        assert "## Praticiens Trouvés (1)" in context.text
        assert "### Dr Jean Martin (KOL)" in context.text

    def test_specific_falls_back_to_fuzzy(self, builder):
        context = builder.build_context(
            routing(intent="practitioner_info", dataScope="specific", searchTerms={"names": ["Dubuis"]}),
            "Et le Dr Dubuis ?",
            "ce mois",
        )

        assert "## Résultats pour \"Dubuis\"" in context.text
        assert "### Dr Sophie Dubois (KOL)" in context.text

    def test_filtered_uses_search_first(self, builder):
        context = builder.build_context(
            routing(dataScope="filtered", searchTerms={"cities": ["Grenoble"]}),
            "Les praticiens de Grenoble",
            "ce mois",
        )

        assert "## Résultats de recherche (1) — Grenoble" in context.text
        assert "Dr Sophie Dubois" in context.text

    def test_filtered_manual_filters(self, dataset):
        builder = ContextBuilder(directory=dataset, today=TODAY)

        context = builder.build_context(
            routing(dataScope="filtered", searchTerms={"specialties": ["pneumo"], "isKOL": True}),
            "Mes KOLs pneumologues",
            "ce mois",
        )

        assert "## Praticiens Filtrés (3)" in context.text
        assert "Stats filtrées: Volume total 445K L/an | 3 KOLs" in context.text
        assert "Dr Michel Garcia" not in context.text

    def test_aggregated(self, builder):
        context = builder.build_context(routing(dataScope="aggregated"), "Top prescripteurs", "ce mois")

        assert "## Top 10 Prescripteurs (volume annuel)" in context.text
        assert "## KOLs (3)" in context.text
        assert "## Praticiens à Risque (1)" in context.text
        assert "- Lyon: 3" in context.text
        assert context.used_rag is False

    def test_aggregated_respects_entities(self, builder, practitioners):
        context = builder.build_context(
            routing(dataScope="aggregated"), "Top prescripteurs", "ce mois", entities=practitioners[:2]
        )

        assert "## KOLs (2)" in context.text
        assert "Praticiens à Risque" not in context.text

    def test_full_has_summary(self, builder):
        context = builder.build_context(routing(dataScope="full"), "Vue d'ensemble", "ce mois")

        assert "## Synthèse (6 premiers praticiens sur 6, par volume)" in context.text

    def test_knowledge_scope(self, builder):
        context = builder.build_context(
            routing(intent="knowledge_query", dataScope="knowledge"),
            "Quelles sont les indications de l'oxygénothérapie ?",
            "ce mois",
        )

        assert context.used_rag is True
        assert context.rag_sources[0].title == "Indications de l'oxygénothérapie de longue durée"
        assert "## Base de Connaissances Métier" in context.text
        assert "## Top 10 Prescripteurs" not in context.text


class TestKnowledgeRetrieval:
    def test_retrieved_once_per_question(self, dataset, knowledge_base):
        knowledge = CountingKnowledge(knowledge_base)
        builder = ContextBuilder(directory=dataset, knowledge=knowledge, today=TODAY)

        builder.build_context(
            routing(intent="knowledge_query", dataScope="knowledge"),
            "Quel remboursement LPPR pour l'oxygénothérapie ?",
            "ce mois",
        )

        assert knowledge.retrievals == 1

    def test_crm_question_skips_knowledge(self, dataset, knowledge_base):
        knowledge = CountingKnowledge(knowledge_base)
        builder = ContextBuilder(directory=dataset, knowledge=knowledge, today=TODAY)

        context = builder.build_context(routing(dataScope="aggregated"), "Combien de KOLs à Lyon ?", "ce mois")

        assert knowledge.retrievals == 0
        assert context.rag_sources == []


class TestEnrichments:
    def test_actions_and_schedule(self, builder, dataset):
        context = builder.build_context(
            routing(dataScope="aggregated"),
            "Quelles actions prioritaires cette semaine ?",
            "ce mois",
            events=dataset.upcoming_visits,
        )

        assert "## Actions Recommandées (4)" in context.text
        assert "[high] Visite KOL prioritaire — Dr Isabelle Moreau" in context.text
        assert "## Visites Planifiées (1)" in context.text
        assert "- 2026-10-21 09:30 : Dr Sophie Dubois" in context.text

    def test_no_enrichment_without_keywords(self, builder, dataset):
        context = builder.build_context(
            routing(dataScope="aggregated"), "Top prescripteurs", "ce mois", events=dataset.upcoming_visits
        )

        assert "## Actions Recommandées" not in context.text
        assert "## Visites Planifiées" not in context.text


def test_general_context(builder):
    context = builder.build_general_context("Comment va mon territoire ?", "ce mois")

    assert context.text.startswith("## Territoire (ce mois)")
    assert "## Top 10 Prescripteurs" in context.text
    assert context.used_rag is False


def test_practitioner_cards(builder):
    cards = builder.practitioner_cards(["Moreau"])

    assert [card.id for card in cards] == ["pr_4"]
    assert cards[0].days_since_last_visit == 154
    assert cards[0].model_dump(by_alias=True)["daysSinceVisit"] == 154
    assert builder.practitioner_cards([]) == []
