"""
Collaborator interfaces the coach pipeline depends on.

The reference implementations live in ``dataset.py`` and ``knowledge.py``;
any object with the same methods can be injected instead.
"""
from datetime import date
from typing import List, Optional, Protocol, Sequence

from aria_coach.services.crm.models import (
    Action,
    GlobalStats,
    KnowledgeResult,
    Objectives,
    PeriodMetrics,
    Practitioner,
    SearchResult,
    UpcomingVisit,
)


class EntityDirectory(Protocol):
    def all_practitioners(self) -> List[Practitioner]: ...

    def get_practitioner(self, practitioner_id: str) -> Optional[Practitioner]: ...

    def fuzzy_search(self, name: str, limit: int = 5) -> List[Practitioner]: ...

    def kols(self) -> List[Practitioner]: ...

    def at_risk(self) -> List[Practitioner]: ...

    def top_by_volume(self, limit: int = 10) -> List[Practitioner]: ...

    def profile_context(self, practitioner_id: str) -> str: ...

    def global_stats(self) -> GlobalStats: ...

    def period_metrics(
        self,
        events: Sequence[UpcomingVisit],
        objectives: Optional[Objectives] = None,
        today: Optional[date] = None,
    ) -> PeriodMetrics: ...


class SearchService(Protocol):
    def search(self, query: str) -> SearchResult: ...


class ActionGenerator(Protocol):
    def generate_actions(self, limit: int = 5) -> List[Action]: ...


class KnowledgeRetriever(Protocol):
    def should_use(self, question: str) -> bool: ...

    def retrieve_knowledge(self, query: str, top_k: int = 4, max_chars: int = 3000) -> KnowledgeResult: ...
