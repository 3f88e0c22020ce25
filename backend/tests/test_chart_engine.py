"""
Unit tests for the deterministic chart engine.

Tests verify:
- Filters, grouping, aggregation, sorting and limits
- Derived fields (riskLevel, visitBucket) used as groups
- Explicit chart type / limit parsing and overrides
- Deterministic modifications preserve the rest of the specification
- Bounded chart history, most recent first
"""
import pytest

from aria_coach.services.ai.charts import (
    ChartHistory,
    apply_delta,
    apply_overrides,
    auto_insights,
    build_chart,
    chart_data_context,
    execute_query,
    explicit_chart_type,
    explicit_limit,
)
from aria_coach.services.ai.schema import ChartHistoryEntry, ChartSpecification
from tests.fakes import TODAY


def spec(**query):
    base = {
        "chartType": "bar",
        "title": "Volume par ville",
        "query": {
            "groupBy": "city",
            "metrics": [{"name": "volume", "field": "volumeL", "aggregation": "sum", "format": "k"}],
            "sortBy": "volume",
        },
    }
    base["query"].update(query)
    return ChartSpecification.model_validate(base)


class TestExecuteQuery:
    def test_group_by_city_sum_in_thousands(self, practitioners):
        data = execute_query(spec(), practitioners, TODAY)

        assert data == [
            {"name": "Lyon", "volume": 296},
            {"name": "Grenoble", "volume": 142},
            {"name": "Saint-Étienne", "volume": 118},
            {"name": "Villeurbanne", "volume": 38},
        ]

    def test_limit_and_ascending_order(self, practitioners):
        data = execute_query(spec(limit=2, sortOrder="asc"), practitioners, TODAY)

        assert [point["name"] for point in data] == ["Villeurbanne", "Saint-Étienne"]

    def test_kol_filter_with_string_value(self, practitioners):
        query_spec = spec(
            groupBy="specialty",
            metrics=[{"name": "count", "aggregation": "count"}],
            sortBy="count",
            filters=[{"field": "isKOL", "operator": "eq", "value": "true"}],
        )

        assert execute_query(query_spec, practitioners, TODAY) == [{"name": "Pneumologue", "count": 3}]

    def test_in_and_gt_filters(self, practitioners):
        query_spec = spec(
            groupBy=None,
            metrics=[{"name": "volume", "field": "volumeL", "format": "k"}],
            filters=[
                {"field": "city", "operator": "in", "value": ["lyon", "Grenoble"]},
                {"field": "volumeL", "operator": "gt", "value": "100000"},
            ],
        )

        data = execute_query(query_spec, practitioners, TODAY)

        assert data == [{"name": "Martin", "volume": 185}, {"name": "Dubois", "volume": 142}]

    def test_contains_ignores_accents(self, practitioners):
        query_spec = spec(
            groupBy="city",
            metrics=[{"name": "count"}],
            sortBy="count",
            filters=[{"field": "city", "operator": "contains", "value": "etienne"}],
        )

        assert execute_query(query_spec, practitioners, TODAY) == [{"name": "Saint-Étienne", "count": 1}]

    def test_per_practitioner_points(self, practitioners):
        query_spec = spec(
            groupBy=None,
            metrics=[{"name": "fidelite", "field": "loyaltyScore"}],
            sortBy="fidelite",
            limit=3,
        )

        data = execute_query(query_spec, practitioners, TODAY)

        assert data == [
            {"name": "Martin", "fidelite": 8.5},
            {"name": "Garcia", "fidelite": 8.1},
            {"name": "Leroy", "fidelite": 7.4},
        ]

    def test_average_is_rounded_to_one_decimal(self, practitioners):
        query_spec = spec(
            groupBy="specialty",
            metrics=[{"name": "fidelite", "field": "loyaltyScore", "aggregation": "avg"}],
            sortBy="fidelite",
            filters=[{"field": "specialty", "operator": "eq", "value": "pneumologue"}],
        )

        assert execute_query(query_spec, practitioners, TODAY) == [{"name": "Pneumologue", "fidelite": 6.2}]

    def test_derived_groups(self, practitioners):
        risk = execute_query(
            spec(groupBy="riskLevel", metrics=[{"name": "count"}], sortBy="count"), practitioners, TODAY
        )
        visits = execute_query(
            spec(groupBy="visitBucket", metrics=[{"name": "count"}], sortBy="count"), practitioners, TODAY
        )

        assert {p["name"]: p["count"] for p in risk} == {"Faible": 3, "Élevé": 3}
        assert {p["name"]: p["count"] for p in visits}["Jamais"] == 1

    def test_no_match(self, practitioners):
        query_spec = spec(filters=[{"field": "city", "operator": "eq", "value": "Paris"}])

        result = build_chart(query_spec, practitioners, TODAY)

        assert result.data == []
        assert result.insights == ["Aucune donnée ne correspond aux critères"]


class TestInsightsAndSuggestions:
    def test_auto_insights_for_pie(self, practitioners):
        pie = spec().model_copy(update={"chart_type": "pie"})
        data = execute_query(pie, practitioners, TODAY)

        insights = auto_insights(pie, data)

        assert insights[0].startswith("**Lyon** arrive en tête avec 296")
        assert "représente" in insights[1]
        assert insights[2] == "Écart de x8 entre Lyon et Villeurbanne"

    def test_supplied_insights_win(self, practitioners):
        with_insights = spec().model_copy(update={"insights": ["Lyon domine"], "suggestions": ["Voir Lyon"]})

        result = build_chart(with_insights, practitioners, TODAY)

        assert result.insights == ["Lyon domine"]
        assert result.suggestions == ["Voir Lyon"]

    def test_auto_suggestions_follow_grouping(self, practitioners):
        result = build_chart(spec(), practitioners, TODAY, generated_by_llm=False)

        assert result.suggestions == ["Détail des KOLs par ville", "Praticiens à risque par ville"]
        assert result.generated_by_llm is False


class TestExplicitRequests:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Top 15 praticiens par volume", 15),
            ("montre-moi les 8 premiers", 8),
            ("top10 KOLs", 10),
            ("les praticiens de Lyon", None),
        ],
    )
    def test_explicit_limit(self, text, expected):
        assert explicit_limit(text) == expected

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("en camembert", "pie"),
            ("un histogramme des volumes", "bar"),
            ("en courbe", "line"),
            ("graphique en aires", "area"),
            ("répartition par ville", None),
            ("graphique à secteurs des KOLs", "pie"),
            ("praticiens par secteur géographique", None),
            ("nombre de praticiens par aire urbaine", None),
            ("praticiens en première ligne", None),
            ("prise de rendez-vous en ligne", None),
        ],
    )
    def test_explicit_chart_type(self, text, expected):
        assert explicit_chart_type(text) == expected

    def test_overrides(self):
        original = spec()

        overridden = apply_overrides(original, chart_type="line", limit=15)

        assert overridden.chart_type == "line"
        assert overridden.query.limit == 15
        assert original.query.limit is None
        assert apply_overrides(original) is original


class TestApplyDelta:
    def test_empty_delta_is_identity(self):
        original = spec()

        assert apply_delta(original, "") is original
        assert apply_delta(original, "   ") is original

    def test_camembert_preserves_query(self):
        original = spec(filters=[{"field": "isKOL", "operator": "eq", "value": True}], limit=5)

        modified = apply_delta(original, "mets ça en camembert")

        assert modified.chart_type == "pie"
        assert modified.query.group_by == "city"
        assert modified.query.filters == original.query.filters
        assert modified.query.limit == 5
        assert modified.title == original.title

    def test_limit_change(self):
        modified = apply_delta(spec(limit=5), "plutôt le top 3")

        assert modified.query.limit == 3
        assert modified.chart_type == "bar"

    def test_unrecognised_delta_is_identity(self):
        original = spec()

        assert apply_delta(original, "change les couleurs") is original


class TestChartHistory:
    def test_bounded_most_recent_first(self):
        history = ChartHistory()
        for i in range(12):
            history.push(ChartHistoryEntry(question=f"q{i}", spec=spec()))

        entries = history.entries()

        assert len(history) == 10
        assert entries[0].question == "q11"
        assert entries[-1].question == "q2"
        assert history.latest().question == "q11"

    def test_clear(self):
        history = ChartHistory()
        history.push(ChartHistoryEntry(question="q", spec=spec()))

        history.clear()

        assert history.latest() is None


def test_chart_data_context(practitioners):
    context = chart_data_context(practitioners)

    assert "6 praticiens (4 Pneumologues, 2 MG)" in context
    assert "3 KOLs (Pneumo: 3, MG: 0)" in context
    assert "Volume total: 594K L/an" in context
