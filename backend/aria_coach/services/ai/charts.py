"""
Deterministic chart engine.

Executes a ``ChartSpecification`` against the practitioner dataset:

1. enrich each practitioner with derived fields (``daysSinceVisit``,
   ``riskLevel``, ``publicationsCount``)
2. apply filters (eq, ne, gt, gte, lt, lte, contains, in)
3. group (plain field or bucketed key) and aggregate each metric
   (count, sum, avg, min, max), or emit one point per practitioner
4. sort by ``sortBy`` and truncate to ``limit``

Also holds the bounded chart history, the automatic insights/suggestions
and the parser for explicit chart-type/limit requests in a user sentence.
"""
import math
import re
from collections import deque
from datetime import date
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from aria_coach.services.ai.schema import (
    ChartDataPoint,
    ChartFilter,
    ChartHistoryEntry,
    ChartResult,
    ChartSpecification,
    MetricSpec,
)
from aria_coach.services.crm.dataset import normalize_text
from aria_coach.services.crm.models import NEVER_VISITED_DAYS, Practitioner

CHART_HISTORY_SIZE = 10

GROUP_BY_KEYS = (
    "city",
    "specialty",
    "vingtile",
    "vingtileBucket",
    "loyaltyBucket",
    "riskLevel",
    "visitBucket",
    "isKOL",
)

_CHART_TYPE_WORDS: Tuple[Tuple[str, str], ...] = (
    (r"camembert|\bpie\b|donut|graphique (?:en|a) secteurs", "pie"),
    (r"histogramme|\bbar\b|\ben (?:barres?|batons)\b|diagramme (?:en|a) barres", "bar"),
    (r"\ben aires?\b|\barea\b", "area"),
    (r"\ben courbes?\b|\bcourbe d|graphique en lignes?|\bline\b", "line"),
    (r"\bcomposed\b|graphique (?:combine|mixte)", "composed"),
)
_LIMIT_PATTERNS = (
    re.compile(r"\btop\s*(\d{1,3})\b"),
    re.compile(r"\b(\d{1,3})\s+(?:premiers|premieres|praticiens|medecins|elements|villes|kols?)\b"),
)


def _js_round(value: float) -> int:
    """Round half up (as dashboards display values)."""
    return int(math.floor(value + 0.5))


def _round1(value: float) -> float:
    return _js_round(value * 10) / 10


def _clean_number(value: float) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _numeric(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


# --------------------------------------------------------------------------- #
# Enrichment, filters, grouping
# --------------------------------------------------------------------------- #


def risk_level(days_since_visit: int, loyalty_score: float) -> str:
    if days_since_visit > 90 or loyalty_score < 4:
        return "high"
    if days_since_visit > 60 or loyalty_score < 6:
        return "medium"
    return "low"


def enrich_practitioner(p: Practitioner, today: date) -> Dict[str, Any]:
    days = p.days_since_visit(today)
    return {
        "id": p.id,
        "title": p.title,
        "firstName": p.first_name,
        "lastName": p.last_name,
        "specialty": p.specialty,
        "city": p.city,
        "postalCode": p.postal_code,
        "volumeL": p.volume_l,
        "loyaltyScore": p.loyalty_score,
        "vingtile": p.vingtile,
        "isKOL": p.is_kol,
        "lastVisitDate": p.last_visit_date.isoformat() if p.last_visit_date else None,
        "daysSinceVisit": days,
        "publicationsCount": p.publications_count,
        "riskLevel": risk_level(days, p.loyalty_score),
    }


def _coerce_like(expected: Any, actual: Any) -> Any:
    if isinstance(actual, bool) and isinstance(expected, str):
        return expected.strip().lower() in ("true", "1", "oui", "yes")
    if isinstance(actual, (int, float)) and not isinstance(actual, bool) and isinstance(expected, str):
        try:
            return float(expected)
        except ValueError:
            return expected
    return expected


def matches_filter(item: Dict[str, Any], flt: ChartFilter) -> bool:
    actual = item.get(flt.field)
    expected = _coerce_like(flt.value, actual)
    op = flt.operator

    if op in ("eq", "ne"):
        if isinstance(actual, str) and isinstance(expected, str):
            equal = normalize_text(actual) == normalize_text(expected)
        else:
            equal = actual == expected
        return equal if op == "eq" else not equal
    if op in ("gt", "gte", "lt", "lte"):
        if not isinstance(actual, (int, float)) or isinstance(actual, bool):
            return False
        if not isinstance(expected, (int, float)):
            return False
        return {
            "gt": actual > expected,
            "gte": actual >= expected,
            "lt": actual < expected,
            "lte": actual <= expected,
        }[op]
    if op == "contains":
        return isinstance(actual, str) and normalize_text(str(expected)) in normalize_text(actual)
    if op == "in":
        if not isinstance(expected, list):
            return False
        if isinstance(actual, str):
            return normalize_text(actual) in {normalize_text(str(v)) for v in expected}
        return actual in expected
    return True


def group_key(item: Dict[str, Any], group_by: str) -> str:
    if group_by == "vingtileBucket":
        v = item["vingtile"]
        return "V1-2 (Top)" if v <= 2 else "V3-5 (Haut)" if v <= 5 else "V6-10 (Moyen)" if v <= 10 else "V11+ (Bas)"
    if group_by == "loyaltyBucket":
        score = item["loyaltyScore"]
        if score <= 2:
            return "Très faible"
        if score <= 4:
            return "Faible"
        if score <= 6:
            return "Moyenne"
        if score <= 8:
            return "Bonne"
        return "Excellente"
    if group_by == "visitBucket":
        d = item["daysSinceVisit"]
        if d < 30:
            return "<30j"
        if d < 60:
            return "30-60j"
        if d < 90:
            return "60-90j"
        if d < NEVER_VISITED_DAYS:
            return ">90j"
        return "Jamais"
    if group_by == "riskLevel":
        return {"high": "Élevé", "medium": "Moyen"}.get(item["riskLevel"], "Faible")
    if group_by == "isKOL":
        return "KOLs" if item["isKOL"] else "Autres"
    value = item.get(group_by)
    return str(value) if value not in (None, "", False) else "Autre"


def aggregate(items: Sequence[Dict[str, Any]], metric: MetricSpec) -> float:
    if metric.aggregation == "count":
        return float(len(items))
    values = [_numeric(item.get(metric.field)) for item in items]
    if not values:
        return 0.0
    if metric.aggregation == "sum":
        return sum(values)
    if metric.aggregation == "avg":
        return sum(values) / len(values)
    if metric.aggregation == "min":
        return min(values)
    if metric.aggregation == "max":
        return max(values)
    return 0.0


def format_value(value: float, fmt: Optional[str]) -> Any:
    if fmt == "k":
        return _js_round(value / 1000)
    if fmt == "percent":
        return _js_round(value * 100)
    return _clean_number(_round1(value))


def _sort_and_limit(points: List[ChartDataPoint], spec: ChartSpecification) -> List[ChartDataPoint]:
    query = spec.query
    metric_names = [m.name for m in query.metrics]
    sort_by = query.sort_by if query.sort_by in metric_names else (metric_names[0] if metric_names else None)
    if sort_by:
        points.sort(key=lambda p: _numeric(p.get(sort_by)), reverse=query.sort_order != "asc")
    if query.limit:
        return points[: query.limit]
    return points


def execute_query(
    spec: ChartSpecification,
    practitioners: Iterable[Practitioner],
    today: Optional[date] = None,
) -> List[ChartDataPoint]:
    today = today or date.today()
    query = spec.query
    rows = [enrich_practitioner(p, today) for p in practitioners]
    for flt in query.filters:
        rows = [row for row in rows if matches_filter(row, flt)]

    if query.group_by:
        groups: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            groups.setdefault(group_key(row, query.group_by), []).append(row)

        points: List[ChartDataPoint] = []
        for name, items in groups.items():
            point: ChartDataPoint = {"name": name}
            for metric in query.metrics:
                point[metric.name] = format_value(aggregate(items, metric), metric.format)
            points.append(point)
        return _sort_and_limit(points, spec)

    points = []
    for row in rows:
        point = {"name": row["lastName"]}
        for metric in query.metrics:
            value = _numeric(row.get(metric.field))
            if metric.format == "k":
                value = float(_js_round(value / 1000))
            point[metric.name] = _clean_number(_round1(value))
        points.append(point)
    return _sort_and_limit(points, spec)


# --------------------------------------------------------------------------- #
# Insights and suggestions
# --------------------------------------------------------------------------- #


def auto_insights(spec: ChartSpecification, data: Sequence[ChartDataPoint]) -> List[str]:
    if not data:
        return ["Aucune donnée ne correspond aux critères"]
    if not spec.query.metrics:
        return []

    metric = spec.query.metrics[0].name
    suffix = spec.formatting.value_suffix or ""
    top = data[0]
    top_value = _numeric(top.get(metric))
    insights = [f"**{top['name']}** arrive en tête avec {top.get(metric)} {suffix}".rstrip()]

    if spec.chart_type == "pie":
        total = sum(_numeric(point.get(metric)) for point in data)
        if total > 0:
            insights.append(f"{top['name']} représente {_js_round(top_value / total * 100)}% du total")

    if len(data) > 2:
        last = data[-1]
        ratio = _js_round(top_value / (_numeric(last.get(metric)) or 1))
        if ratio > 1:
            insights.append(f"Écart de x{ratio} entre {top['name']} et {last['name']}")
    return insights


def auto_suggestions(spec: ChartSpecification) -> List[str]:
    group_by = spec.query.group_by
    if group_by == "city":
        return ["Détail des KOLs par ville", "Praticiens à risque par ville"]
    if group_by == "specialty":
        return ["Top 10 par spécialité", "Fidélité par spécialité"]
    if group_by in ("vingtileBucket", "vingtile"):
        return ["Détail du segment Top", "KOLs par segment"]
    if group_by == "riskLevel":
        return ["Liste des praticiens à risque élevé", "Actions prioritaires"]
    return ["Répartition par ville", "Analyse par segment"]


def build_chart(
    spec: ChartSpecification,
    practitioners: Iterable[Practitioner],
    today: Optional[date] = None,
    generated_by_llm: bool = True,
) -> ChartResult:
    """Execute ``spec``; insights and suggestions supplied with the spec win over automatic ones."""
    data = execute_query(spec, practitioners, today)
    return ChartResult(
        spec=spec,
        data=data,
        insights=spec.insights or auto_insights(spec, data),
        suggestions=spec.suggestions or auto_suggestions(spec),
        generated_by_llm=generated_by_llm,
    )


def describe_points(data: Sequence[ChartDataPoint], limit: int) -> str:
    """``  name: metric: value, ...`` lines for prompts."""
    lines = []
    for point in data[:limit]:
        metrics = ", ".join(
            f"{key}: {value}" for key, value in point.items()
            if key != "name" and not key.startswith("_")
        )
        lines.append(f"  {point.get('name')}: {metrics}")
    return "\n".join(lines)


def chart_summary(result: ChartResult) -> str:
    return f"{result.spec.title or result.spec.chart_type} ({result.spec.chart_type}, {len(result.data)} points)"


# --------------------------------------------------------------------------- #
# Explicit requests in a sentence
# --------------------------------------------------------------------------- #


def explicit_chart_type(text: str) -> Optional[str]:
    normalized = normalize_text(text or "")
    for pattern, chart_type in _CHART_TYPE_WORDS:
        if re.search(pattern, normalized):
            return chart_type
    return None


def explicit_limit(text: str) -> Optional[int]:
    normalized = normalize_text(text or "")
    for pattern in _LIMIT_PATTERNS:
        match = pattern.search(normalized)
        if match:
            value = int(match.group(1))
            if value > 0:
                return value
    return None


def apply_overrides(
    spec: ChartSpecification,
    chart_type: Optional[str] = None,
    limit: Optional[int] = None,
) -> ChartSpecification:
    """Copy of ``spec`` with the given chart type and limit forced."""
    updates: Dict[str, Any] = {}
    if chart_type and spec.chart_type != chart_type:
        updates["chart_type"] = chart_type
    query = spec.query
    if limit and query.limit != limit:
        query = query.model_copy(update={"limit": limit})
        updates["query"] = query
    if not updates:
        return spec
    return spec.model_copy(update=updates)


def apply_delta(spec: ChartSpecification, delta: str) -> ChartSpecification:
    """
    Apply the parts of a modification sentence that the grammar recognises.

    An empty delta returns ``spec`` itself.
    """
    if not delta or not delta.strip():
        return spec
    return apply_overrides(spec, explicit_chart_type(delta), explicit_limit(delta))


# --------------------------------------------------------------------------- #
# History and data context
# --------------------------------------------------------------------------- #


class ChartHistory:
    """Bounded chart history, most recent first."""

    def __init__(self, max_entries: int = CHART_HISTORY_SIZE):
        self._entries: Deque[ChartHistoryEntry] = deque(maxlen=max_entries)

    def push(self, entry: ChartHistoryEntry) -> None:
        self._entries.appendleft(entry)

    def latest(self) -> Optional[ChartHistoryEntry]:
        return self._entries[0] if self._entries else None

    def entries(self) -> List[ChartHistoryEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def chart_data_context(practitioners: Sequence[Practitioner]) -> str:
    """Compact dataset description sent with chart requests."""
    total = len(practitioners)
    pneumo = sum(1 for p in practitioners if p.specialty == "Pneumologue")
    kols = [p for p in practitioners if p.is_kol]
    kol_pneumo = sum(1 for p in kols if p.specialty == "Pneumologue")
    volume = sum(p.volume_l for p in practitioners)
    loyalty = sum(p.loyalty_score for p in practitioners) / total if total else 0.0
    cities = list(dict.fromkeys(p.city for p in practitioners))
    return (
        "DONNÉES ACTUELLES :\n"
        f"- {total} praticiens ({pneumo} Pneumologues, {total - pneumo} MG)\n"
        f"- {len(kols)} KOLs (Pneumo: {kol_pneumo}, MG: {len(kols) - kol_pneumo})\n"
        f"- Volume total: {_js_round(volume / 1000)}K L/an\n"
        f"- Fidélité moyenne: {loyalty:.1f}/10\n"
        f"- Villes: {', '.join(cities)}"
    )
