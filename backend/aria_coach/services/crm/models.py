"""
CRM domain models consumed by the coach pipeline.

Field names are snake_case in Python and camelCase on the wire (the
dataset JSON and the API use camelCase).
"""
from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Sentinel used when a practitioner was never visited.
NEVER_VISITED_DAYS = 999

Specialty = Literal["Pneumologue", "Médecin généraliste"]
RiskLevel = Literal["low", "medium", "high"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NewsItem(CamelModel):
    date: date
    type: Literal["publication", "conference", "award", "news"] = "news"
    title: str
    summary: str = ""


class VisitReport(CamelModel):
    """Notes captured after a past visit."""

    date: date
    summary: str
    sentiment: Literal["positive", "neutral", "negative"] = "neutral"
    actions: List[str] = Field(default_factory=list)


class Practitioner(CamelModel):
    id: str
    title: str = "Dr"
    first_name: str
    last_name: str
    specialty: Specialty
    is_kol: bool = Field(False, alias="isKOL")
    vingtile: int = Field(..., ge=1, le=20)

    city: str
    postal_code: str = ""
    address: str = ""
    phone: str = ""
    email: str = ""

    volume_l: float = Field(0.0, alias="volumeL")
    patient_count: int = 0
    loyalty_score: float = Field(0.0, ge=0, le=10)
    trend: Literal["up", "down", "stable"] = "stable"
    churn_risk: RiskLevel = "low"

    last_visit_date: Optional[date] = None
    visit_count: int = 0
    ai_summary: str = ""
    next_best_action: str = ""

    news: List[NewsItem] = Field(default_factory=list)
    visits: List[VisitReport] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def display_name(self) -> str:
        return f"{self.title} {self.first_name} {self.last_name}"

    @property
    def publications_count(self) -> int:
        return sum(1 for item in self.news if item.type == "publication")

    def days_since_visit(self, today: Optional[date] = None) -> int:
        if self.last_visit_date is None:
            return NEVER_VISITED_DAYS
        return ((today or date.today()) - self.last_visit_date).days


class UpcomingVisit(CamelModel):
    id: str
    practitioner_id: str
    date: date
    time: str = ""
    type: Literal["scheduled", "tentative"] = "scheduled"
    notes: str = ""


class Objectives(CamelModel):
    visits_monthly: int = 60
    visits_completed: int = 0
    new_prescribers: int = 0


class GlobalStats(BaseModel):
    total_practitioners: int
    pneumologues: int
    generalistes: int
    total_kols: int
    total_volume: float
    average_loyalty: float


class PeriodMetrics(BaseModel):
    visits_count: int
    visits_objective: int
    volume_growth: float
    new_prescribers: int


class Action(BaseModel):
    """Recommended next action for one practitioner."""

    type: Literal["visit_kol", "churn_risk", "top_potential", "publication", "follow_up", "discovery"]
    practitioner_id: str
    practitioner_name: str
    title: str
    reason: str
    priority: Literal["high", "medium", "low"]
    score: float


class KnowledgeChunk(CamelModel):
    title: str
    content: str
    source: str
    source_url: Optional[str] = None
    score: float = 0.0


class KnowledgeResult(BaseModel):
    chunks: List[KnowledgeChunk] = Field(default_factory=list)
    context: str = ""


class SearchResult(BaseModel):
    results: List[Practitioner] = Field(default_factory=list)
    context: str = ""
