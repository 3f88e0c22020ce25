"""
Pydantic models for coach agent outputs and pipeline results.

LLM outputs (router result, chart specification) are parsed leniently
(markdown fences and stray text around the JSON object are tolerated) and
then validated strictly: an out-of-enum intent, scope or chart type fails
validation and the caller discards the output.

Wire names are camelCase (``needsChart``, ``chartParams``...), Python
attributes are snake_case.
"""
import json
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from aria_coach.services.crm.models import KnowledgeChunk, Practitioner

Intent = Literal[
    "chart_create",
    "chart_modify",
    "data_query",
    "practitioner_info",
    "strategic_advice",
    "follow_up",
    "general",
    "knowledge_query",
]
DataScope = Literal["specific", "filtered", "aggregated", "full", "knowledge"]
ChartType = Literal["bar", "pie", "line", "composed", "area"]
SortOrder = Literal["asc", "desc"]
FilterOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "contains", "in"]
Aggregation = Literal["count", "sum", "avg", "min", "max"]
ValueFormat = Literal["number", "k", "percent", "currency"]

CHART_INTENTS = frozenset({"chart_create", "chart_modify"})

ChartDataPoint = Dict[str, Any]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _lower(value: Any) -> Any:
    return value.lower().strip() if isinstance(value, str) else value


# --------------------------------------------------------------------------- #
# Router
# --------------------------------------------------------------------------- #


class SearchTerms(CamelModel):
    names: List[str] = Field(default_factory=list)
    cities: List[str] = Field(default_factory=list)
    specialties: List[str] = Field(default_factory=list)
    is_kol: Optional[bool] = Field(None, alias="isKOL")

    @field_validator("names", "cities", "specialties", mode="before")
    @classmethod
    def drop_empty(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(v).strip() for v in value if v is not None and str(v).strip()]
        return value


class ChartFilter(CamelModel):
    field: str
    operator: FilterOperator = "eq"
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, value: Any) -> Any:
        return _lower(value)


class RouterChartParams(CamelModel):
    chart_type: Optional[ChartType] = None
    group_by: Optional[str] = None
    metrics: List[str] = Field(default_factory=list)
    limit: Optional[int] = Field(None, ge=1)
    sort_order: Optional[SortOrder] = None
    filters: List[ChartFilter] = Field(default_factory=list)

    @field_validator("chart_type", "sort_order", mode="before")
    @classmethod
    def normalize_enum(cls, value: Any) -> Any:
        return _lower(value) or None

    @field_validator("metrics", mode="before")
    @classmethod
    def stringify_metrics(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [v.get("field", v.get("name", "")) if isinstance(v, dict) else str(v) for v in value]
        return value

    @field_validator("limit", mode="before")
    @classmethod
    def empty_limit(cls, value: Any) -> Any:
        return None if value in ("", 0) else value


class RouterResult(CamelModel):
    """Classification and parameters extracted for one question."""

    intent: Intent
    needs_chart: bool = False
    chart_modification: Optional[str] = None
    data_scope: DataScope = "full"
    search_terms: SearchTerms = Field(default_factory=SearchTerms)
    chart_params: RouterChartParams = Field(default_factory=RouterChartParams)
    response_guidance: str = ""

    @field_validator("intent", "data_scope", mode="before")
    @classmethod
    def normalize(cls, value: Any) -> Any:
        return _lower(value)

    @field_validator("search_terms", "chart_params", mode="before")
    @classmethod
    def null_to_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("response_guidance", mode="before")
    @classmethod
    def null_guidance(cls, value: Any) -> Any:
        return value or ""

    @model_validator(mode="after")
    def chart_intents_need_chart(self) -> "RouterResult":
        if self.intent in CHART_INTENTS:
            self.needs_chart = True
        return self


# --------------------------------------------------------------------------- #
# Charts
# --------------------------------------------------------------------------- #


class MetricSpec(CamelModel):
    name: str
    field: str = "id"
    aggregation: Aggregation = "count"
    format: Optional[ValueFormat] = None

    @field_validator("aggregation", mode="before")
    @classmethod
    def normalize_aggregation(cls, value: Any) -> Any:
        return _lower(value) or "count"

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, value: Any) -> Any:
        return _lower(value) or None


class ChartQuery(CamelModel):
    source: str = "practitioners"
    filters: List[ChartFilter] = Field(default_factory=list)
    group_by: Optional[str] = None
    metrics: List[MetricSpec] = Field(..., min_length=1)
    sort_by: Optional[str] = None
    sort_order: SortOrder = "desc"
    limit: Optional[int] = Field(None, ge=1)

    @field_validator("filters", mode="before")
    @classmethod
    def null_filters(cls, value: Any) -> Any:
        return value or []

    @field_validator("sort_order", mode="before")
    @classmethod
    def default_order(cls, value: Any) -> Any:
        return _lower(value) or "desc"

    @field_validator("limit", "group_by", mode="before")
    @classmethod
    def empty_to_none(cls, value: Any) -> Any:
        return None if value in ("", 0, "null") else value


class ChartFormatting(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    show_legend: bool = True
    show_grid: Optional[bool] = None
    x_axis_label: Optional[str] = None
    y_axis_label: Optional[str] = None
    value_prefix: Optional[str] = None
    value_suffix: Optional[str] = None
    colors: Optional[List[str]] = None


class ChartSpecification(CamelModel):
    chart_type: ChartType
    title: str = ""
    description: str = ""
    query: ChartQuery
    formatting: ChartFormatting = Field(default_factory=ChartFormatting)
    insights: Optional[List[str]] = None
    suggestions: Optional[List[str]] = None

    @field_validator("chart_type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _lower(value)

    @field_validator("formatting", mode="before")
    @classmethod
    def null_formatting(cls, value: Any) -> Any:
        return {} if value is None else value


class ChartResult(CamelModel):
    spec: ChartSpecification
    data: List[ChartDataPoint] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    generated_by_llm: bool = Field(True, alias="generatedByLLM")


class ChartHistoryEntry(CamelModel):
    question: str
    spec: ChartSpecification
    data: List[ChartDataPoint] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)


# --------------------------------------------------------------------------- #
# Conversation and pipeline result
# --------------------------------------------------------------------------- #


class ConversationMessage(CamelModel):
    role: Literal["user", "assistant"]
    content: str
    has_chart: Optional[bool] = None
    chart_summary: Optional[str] = None


class PractitionerCard(Practitioner):
    days_since_last_visit: int = Field(..., alias="daysSinceVisit")


class PipelineResult(CamelModel):
    """Terminal result of one question."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    text_content: str
    chart: Optional[ChartResult] = None
    entities: Optional[List[PractitionerCard]] = None
    suggestions: Optional[List[str]] = None
    source: Literal["llm", "direct", "diagnostic"]
    rag_sources: Optional[List[KnowledgeChunk]] = None
    used_rag: bool = Field(False, alias="usedRAG")
    provider_tier: Optional[str] = None


# --------------------------------------------------------------------------- #
# Parsing and validation
# --------------------------------------------------------------------------- #


class SchemaValidationError(Exception):
    """Raised when LLM output fails schema validation."""

    def __init__(self, agent: str, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.agent = agent
        self.raw_output = raw_output


_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)


def parse_json_object(raw: str, agent: str) -> Dict[str, Any]:
    """
    Extract one JSON object from model output.

    Accepts a bare object, a ```json fenced block, or an object surrounded by
    prose (first ``{`` to last ``}``).

    Raises:
        SchemaValidationError if no JSON object can be decoded.
    """
    text = _THINK_BLOCK.sub("", raw or "").strip()
    fenced = _FENCED_JSON.search(text)
    if fenced:
        text = fenced.group(1)

    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict):
            return payload

    raise SchemaValidationError(agent=agent, message="Output is not a JSON object", raw_output=raw)


def validate_router_payload(payload: Dict[str, Any]) -> RouterResult:
    """
    Validate raw JSON payload for the router output.

    Raises:
        SchemaValidationError if validation fails.
    """
    try:
        return RouterResult.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationError(
            agent="router",
            message=f"Invalid router payload: {exc}",
        ) from exc


def validate_chart_payload(payload: Dict[str, Any]) -> ChartSpecification:
    """
    Validate raw JSON payload for a chart specification.

    Raises:
        SchemaValidationError if validation fails.
    """
    try:
        return ChartSpecification.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationError(
            agent="chart",
            message=f"Invalid chart payload: {exc}",
        ) from exc
