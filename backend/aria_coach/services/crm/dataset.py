"""
In-memory CRM dataset.

Reference implementation of the ``EntityDirectory``, ``SearchService`` and
``ActionGenerator`` collaborators, loaded from a JSON file:

    {"practitioners": [{...camelCase Practitioner...}], "upcomingVisits": [...]}

Fuzzy name lookup uses SymSpell over first and last names so that
misspelled names ("Dupond", "Lefebre") still resolve.

Environment configuration (read by ``get_crm_dataset``):
- CRM_DATA_PATH: dataset JSON (default: data/crm_sample.json)
"""
import json
import os
import unicodedata
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from symspellpy import SymSpell, Verbosity

from aria_coach.core.logging import get_logger
from aria_coach.services.crm.models import (
    Action,
    GlobalStats,
    Objectives,
    PeriodMetrics,
    Practitioner,
    SearchResult,
    UpcomingVisit,
)

logger = get_logger(__name__)

DEFAULT_VISITS_OBJECTIVE = 60

_SPECIALTY_KEYWORDS = {
    "pneumo": "Pneumologue",
    "generaliste": "Médecin généraliste",
    "medecin generaliste": "Médecin généraliste",
    " mg ": "Médecin généraliste",
}


def normalize_text(text: str) -> str:
    """Lowercase and strip accents."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def format_number(value: float) -> str:
    return f"{value:g}"


def format_summary_line(p: Practitioner) -> str:
    """One-line summary used by every context section."""
    line = (
        f"- {p.display_name} | {p.specialty} | {p.city} | V:{p.volume_l / 1000:.0f}K L/an"
        f" | F:{format_number(p.loyalty_score)}/10 | V{p.vingtile}"
    )
    if p.is_kol:
        line += " | KOL"
    if p.publications_count:
        line += f" | {p.publications_count} pub"
    return line


def name_matches(p: Practitioner, names: Sequence[str]) -> bool:
    """Case-insensitive substring match on full, first or last name."""
    full = normalize_text(p.full_name)
    first = normalize_text(p.first_name)
    last = normalize_text(p.last_name)
    for name in names:
        needle = normalize_text(name.strip())
        if needle and (needle in full or needle in first or needle in last):
            return True
    return False


class CRMDataset:
    """Practitioners, lookups, aggregates and rule-based actions."""

    def __init__(
        self,
        practitioners: Sequence[Practitioner],
        upcoming_visits: Optional[Sequence[UpcomingVisit]] = None,
        today: Optional[date] = None,
        max_edit_distance: int = 2,
    ):
        self._practitioners: List[Practitioner] = list(practitioners)
        self._by_id: Dict[str, Practitioner] = {p.id: p for p in self._practitioners}
        self.upcoming_visits: List[UpcomingVisit] = list(upcoming_visits or [])
        self._today = today
        self.max_edit_distance = max_edit_distance

        self._sym_spell = SymSpell(max_dictionary_edit_distance=max_edit_distance)
        self._name_index: Dict[str, List[str]] = {}
        for p in self._practitioners:
            for token in normalize_text(p.full_name).split():
                self._sym_spell.create_dictionary_entry(token, 1)
                self._name_index.setdefault(token, []).append(p.id)

    @classmethod
    def from_file(cls, path: Path, today: Optional[date] = None) -> "CRMDataset":
        with Path(path).open("r", encoding="utf-8") as f:
            raw = json.load(f)
        if isinstance(raw, list):
            raw = {"practitioners": raw}
        practitioners = [Practitioner.model_validate(item) for item in raw.get("practitioners", [])]
        visits = [UpcomingVisit.model_validate(item) for item in raw.get("upcomingVisits", [])]
        logger.info("crm_dataset_loaded", path=str(path), practitioners=len(practitioners), visits=len(visits))
        return cls(practitioners, upcoming_visits=visits, today=today)

    @property
    def today(self) -> date:
        return self._today or date.today()

    # ------------------------------------------------------------------ #
    # EntityDirectory
    # ------------------------------------------------------------------ #

    def all_practitioners(self) -> List[Practitioner]:
        return list(self._practitioners)

    def get_practitioner(self, practitioner_id: str) -> Optional[Practitioner]:
        return self._by_id.get(practitioner_id)

    def find_by_names(self, names: Sequence[str]) -> List[Practitioner]:
        return [p for p in self._practitioners if name_matches(p, names)]

    def fuzzy_search(self, name: str, limit: int = 5) -> List[Practitioner]:
        """Practitioners whose name tokens are within the edit distance of ``name``'s tokens."""
        distances: Dict[str, int] = {}
        for token in normalize_text(name).split():
            suggestions = self._sym_spell.lookup(
                token,
                Verbosity.CLOSEST,
                max_edit_distance=self.max_edit_distance,
            )
            for suggestion in suggestions:
                for practitioner_id in self._name_index.get(suggestion.term, []):
                    best = distances.get(practitioner_id)
                    if best is None or suggestion.distance < best:
                        distances[practitioner_id] = suggestion.distance

        ranked = sorted(distances.items(), key=lambda item: (item[1], -self._by_id[item[0]].volume_l))
        return [self._by_id[pid] for pid, _ in ranked[:limit]]

    def kols(self) -> List[Practitioner]:
        return sorted((p for p in self._practitioners if p.is_kol), key=lambda p: p.volume_l, reverse=True)

    def at_risk(self) -> List[Practitioner]:
        today = self.today
        risky = [
            p for p in self._practitioners
            if p.churn_risk == "high" or (p.loyalty_score < 5 and p.days_since_visit(today) > 60)
        ]
        return sorted(risky, key=lambda p: p.volume_l, reverse=True)

    def top_by_volume(self, limit: int = 10) -> List[Practitioner]:
        return sorted(self._practitioners, key=lambda p: p.volume_l, reverse=True)[:limit]

    def profile_context(self, practitioner_id: str) -> str:
        p = self._by_id.get(practitioner_id)
        if p is None:
            return ""
        days = p.days_since_visit(self.today)
        last_visit = "jamais visité" if p.last_visit_date is None else f"{p.last_visit_date.isoformat()} (il y a {days} jours)"
        lines = [
            f"\n### {p.display_name}{' (KOL)' if p.is_kol else ''}",
            f"- Spécialité: {p.specialty} | {p.city} {p.postal_code}".rstrip(),
            f"- Volume: {p.volume_l / 1000:.0f}K L/an | Fidélité: {format_number(p.loyalty_score)}/10"
            f" | Vingtile: V{p.vingtile} | Tendance: {p.trend} | Risque: {p.churn_risk}",
            f"- Dernière visite: {last_visit} | {p.visit_count} visites",
        ]
        if p.phone or p.email:
            lines.append(f"- Contact: {p.phone} {p.email}".rstrip())
        if p.ai_summary:
            lines.append(f"- Synthèse: {p.ai_summary}")
        if p.next_best_action:
            lines.append(f"- Prochaine action recommandée: {p.next_best_action}")
        recent_visits = sorted(p.visits, key=lambda v: v.date, reverse=True)[:3]
        if recent_visits:
            lines.append("- Dernières visites:")
            for visit in recent_visits:
                lines.append(f"  - {visit.date.isoformat()} ({visit.sentiment}): {visit.summary}")
        publications = [n for n in sorted(p.news, key=lambda n: n.date, reverse=True) if n.type == "publication"][:3]
        if publications:
            lines.append("- Publications:")
            for item in publications:
                lines.append(f"  - {item.date.isoformat()}: {item.title}")
        return "\n".join(lines) + "\n"

    def global_stats(self) -> GlobalStats:
        total = len(self._practitioners)
        return GlobalStats(
            total_practitioners=total,
            pneumologues=sum(1 for p in self._practitioners if p.specialty == "Pneumologue"),
            generalistes=sum(1 for p in self._practitioners if p.specialty == "Médecin généraliste"),
            total_kols=sum(1 for p in self._practitioners if p.is_kol),
            total_volume=sum(p.volume_l for p in self._practitioners),
            average_loyalty=(sum(p.loyalty_score for p in self._practitioners) / total) if total else 0.0,
        )

    def period_metrics(
        self,
        events: Sequence[UpcomingVisit],
        objectives: Optional[Objectives] = None,
        today: Optional[date] = None,
    ) -> PeriodMetrics:
        """Monthly activity: completed visits vs objective, volume trend, new prescribers."""
        today = today or self.today
        if objectives is not None and objectives.visits_completed:
            visits_count = objectives.visits_completed
        else:
            visits_count = sum(1 for p in self._practitioners if p.days_since_visit(today) <= 30)

        visits_objective = objectives.visits_monthly if objectives is not None else DEFAULT_VISITS_OBJECTIVE

        total = len(self._practitioners) or 1
        up = sum(1 for p in self._practitioners if p.trend == "up")
        down = sum(1 for p in self._practitioners if p.trend == "down")
        volume_growth = (up - down) / total * 10

        if objectives is not None and objectives.new_prescribers:
            new_prescribers = objectives.new_prescribers
        else:
            new_prescribers = sum(
                1 for p in self._practitioners
                if p.visit_count <= 1 and p.days_since_visit(today) <= 90
            )

        return PeriodMetrics(
            visits_count=visits_count,
            visits_objective=max(visits_objective, 1),
            volume_growth=volume_growth,
            new_prescribers=new_prescribers,
        )

    # ------------------------------------------------------------------ #
    # SearchService
    # ------------------------------------------------------------------ #

    def search(self, query: str) -> SearchResult:
        """
        Keyword search over cities, specialties, the KOL flag and names.

        Returns an empty result when the query names no recognised criterion.
        """
        q = f" {normalize_text(query)} "
        cities = {p.city for p in self._practitioners if normalize_text(p.city) in q}
        specialties = {value for key, value in _SPECIALTY_KEYWORDS.items() if key in q}
        kol_only = " kol" in q
        named = [p for p in self._practitioners if f" {normalize_text(p.last_name)} " in q]

        if not (cities or specialties or kol_only or named):
            return SearchResult()

        if named:
            results = named
        else:
            results = [
                p for p in self._practitioners
                if (not cities or p.city in cities)
                and (not specialties or p.specialty in specialties)
                and (not kol_only or p.is_kol)
            ]
        results = sorted(results, key=lambda p: p.volume_l, reverse=True)
        if not results:
            return SearchResult()

        criteria = ", ".join(sorted(cities | specialties) + (["KOL"] if kol_only else []))
        lines = [f"\n## Résultats de recherche ({len(results)}){f' — {criteria}' if criteria else ''}"]
        lines.extend(format_summary_line(p) for p in results[:15])
        if len(results) > 15:
            lines.append(f"... et {len(results) - 15} autres")
        return SearchResult(results=results, context="\n".join(lines) + "\n")

    # ------------------------------------------------------------------ #
    # ActionGenerator
    # ------------------------------------------------------------------ #

    def generate_actions(self, limit: int = 5) -> List[Action]:
        """At most one rule-based action per practitioner, highest score first."""
        today = self.today
        actions: List[Action] = []
        for p in self._practitioners:
            action = self._action_for(p, today)
            if action is not None:
                actions.append(action)
        actions.sort(key=lambda a: a.score, reverse=True)
        return actions[:limit]

    def _action_for(self, p: Practitioner, today: date) -> Optional[Action]:
        days = p.days_since_visit(today)
        base = dict(practitioner_id=p.id, practitioner_name=p.display_name)

        if p.is_kol and days > 60:
            return Action(
                type="visit_kol",
                title="Visite KOL prioritaire",
                reason=f"KOL non visité depuis {days} jours",
                priority="high",
                score=90 + min(days, 180) / 10,
                **base,
            )
        if p.churn_risk == "high" or p.loyalty_score < 4:
            return Action(
                type="churn_risk",
                title="Risque de perte détecté",
                reason=f"Fidélité {format_number(p.loyalty_score)}/10, volume {p.volume_l / 1000:.0f}K L/an",
                priority="high",
                score=80 + min(p.volume_l / 10000, 10),
                **base,
            )
        if p.vingtile <= 3 and days > 45:
            return Action(
                type="top_potential",
                title="Visite Top prescripteur à planifier",
                reason=f"Vingtile V{p.vingtile}, dernière visite il y a {days} jours",
                priority="medium",
                score=70 + (4 - p.vingtile) * 5,
                **base,
            )
        recent_publications = [
            n for n in p.news
            if n.type == "publication" and (today - n.date).days <= 180
        ]
        if recent_publications:
            return Action(
                type="publication",
                title="Publication récente à valoriser",
                reason=recent_publications[0].title,
                priority="medium",
                score=60,
                **base,
            )
        if p.last_visit_date is None:
            return Action(
                type="discovery",
                title="Visite de découverte",
                reason="Praticien jamais visité",
                priority="low",
                score=50,
                **base,
            )
        pending = [a for v in p.visits for a in v.actions]
        if 30 <= days <= 60 and pending:
            return Action(
                type="follow_up",
                title="Suivi à effectuer",
                reason=pending[0],
                priority="low",
                score=40,
                **base,
            )
        return None


_crm_dataset: Optional[CRMDataset] = None


def get_crm_dataset() -> CRMDataset:
    """Global dataset loaded from CRM_DATA_PATH; empty when the file is missing."""
    global _crm_dataset
    if _crm_dataset is None:
        path = Path(os.getenv("CRM_DATA_PATH", "data/crm_sample.json"))
        if path.exists():
            _crm_dataset = CRMDataset.from_file(path)
        else:
            logger.warning("crm_dataset_missing", path=str(path))
            _crm_dataset = CRMDataset([])
    return _crm_dataset
