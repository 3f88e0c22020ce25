"""
Context Builder.

Assembles the textual data context sent with the answer prompt. The size is
bounded by per-section caps, most decision-relevant rows first:

- territory header (always): global stats and period metrics
- scope section, chosen by ``RouterResult.data_scope``:
    specific    exact-substring name match (<=10 full profiles), else fuzzy
                match (<=5 profiles per name)
    filtered    search collaborator, else manual city/specialty/KOL filter
                (<=20 summary rows + filtered totals)
    aggregated  top 10 by volume, KOLs (<=10), at-risk (<=8), city tally
    full        search subset + top-20 summary
    knowledge   knowledge passages only
- keyword enrichments (any scope): actions, schedule, performance,
  news/publications, visit reports
- knowledge passages, retrieved at most once per question when the router
  asked for them or the retriever's own heuristic fires
"""
from collections import Counter
from datetime import date
from typing import Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from aria_coach.core.logging import get_logger
from aria_coach.services.ai.schema import PractitionerCard, RouterResult
from aria_coach.services.crm.dataset import format_summary_line, name_matches, normalize_text
from aria_coach.services.crm.models import KnowledgeChunk, Objectives, Practitioner, UpcomingVisit
from aria_coach.services.crm.protocols import (
    ActionGenerator,
    EntityDirectory,
    KnowledgeRetriever,
    SearchService,
)

logger = get_logger(__name__)

SPECIFIC_MAX_PROFILES = 10
FUZZY_MAX_PROFILES = 5
FILTERED_MAX_ROWS = 20
TOP_LIMIT = 10
KOL_LIMIT = 10
AT_RISK_LIMIT = 8
FULL_SUMMARY_LIMIT = 20
CARD_LIMIT = 5

KNOWLEDGE_TOP_K = 4
KNOWLEDGE_MAX_CHARS = 3000

ACTION_KEYWORDS = ("action", "priorit", "que faire", "recommand", "a faire", "plan d'action")
SCHEDULE_KEYWORDS = (
    "planning", "agenda", "rendez-vous", "rdv", "semaine", "demain", "aujourd'hui",
    "prochaine visite", "prochaines visites", "visites prevues", "tournee",
)
PERFORMANCE_KEYWORDS = ("objectif", "performance", "progression", "resultat", "kpi", "croissance")
NEWS_KEYWORDS = ("publication", "actualite", "news", "article", "congres", "etude")
REPORT_KEYWORDS = (
    "compte-rendu", "compte rendu", "comptes-rendus", "rapport", "notes de visite",
    "derniere visite", "historique des visites",
)

ACTIONS_LIMIT = 5
SCHEDULE_LIMIT = 10
NEWS_LIMIT = 8
REPORTS_LIMIT = 5


class BuiltContext(BaseModel):
    text: str
    rag_sources: List[KnowledgeChunk] = Field(default_factory=list)
    used_rag: bool = False


def _has_any(normalized_question: str, keywords: Iterable[str]) -> bool:
    return any(keyword in normalized_question for keyword in keywords)


class ContextBuilder:
    """Builds scope-specific and generic contexts from the CRM collaborators."""

    def __init__(
        self,
        directory: EntityDirectory,
        search: Optional[SearchService] = None,
        actions: Optional[ActionGenerator] = None,
        knowledge: Optional[KnowledgeRetriever] = None,
        today: Optional[date] = None,
    ):
        self.directory = directory
        self.search = search
        self.actions = actions
        self.knowledge = knowledge
        self._today = today

    @property
    def today(self) -> date:
        return self._today or date.today()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def build_context(
        self,
        routing: RouterResult,
        question: str,
        period_label: str,
        entities: Optional[Sequence[Practitioner]] = None,
        events: Sequence[UpcomingVisit] = (),
        objectives: Optional[Objectives] = None,
    ) -> BuiltContext:
        population = list(entities) if entities is not None else self.directory.all_practitioners()
        parts = [self._territory_header(period_label, events, objectives)]

        scope = routing.data_scope
        if scope == "specific":
            parts.append(self._specific_section(routing.search_terms.names))
        elif scope == "filtered":
            parts.append(self._filtered_section(routing, question, population))
        elif scope == "aggregated":
            parts.append(self._aggregated_section(population))
        elif scope == "full":
            parts.append(self._full_section(question, population))

        parts.append(self._enrichments(question, population, events, objectives))

        wants_knowledge = scope == "knowledge" or routing.intent == "knowledge_query"
        chunks, knowledge_text = self._knowledge(question, forced=wants_knowledge)
        parts.append(knowledge_text)

        text = "".join(part for part in parts if part)
        logger.info(
            "context_built",
            scope=scope,
            intent=routing.intent,
            chars=len(text),
            used_rag=bool(chunks),
        )
        return BuiltContext(text=text, rag_sources=chunks, used_rag=bool(chunks))

    def build_general_context(
        self,
        question: str,
        period_label: str,
        entities: Optional[Sequence[Practitioner]] = None,
        events: Sequence[UpcomingVisit] = (),
        objectives: Optional[Objectives] = None,
    ) -> BuiltContext:
        """Unscoped context for the direct-response path."""
        population = list(entities) if entities is not None else self.directory.all_practitioners()
        parts = [
            self._territory_header(period_label, events, objectives),
            self._aggregated_section(population),
            self._search_context(question),
            self._enrichments(question, population, events, objectives),
        ]
        chunks, knowledge_text = self._knowledge(question, forced=False)
        parts.append(knowledge_text)
        text = "".join(part for part in parts if part)
        return BuiltContext(text=text, rag_sources=chunks, used_rag=bool(chunks))

    def practitioner_cards(self, names: Sequence[str], limit: int = CARD_LIMIT) -> List[PractitionerCard]:
        """Practitioners matching ``names`` (substring match), with ``days_since_last_visit``."""
        if not names:
            return []
        matches = [p for p in self.directory.all_practitioners() if name_matches(p, names)]
        return [
            PractitionerCard(**p.model_dump(), days_since_last_visit=p.days_since_visit(self.today))
            for p in matches[:limit]
        ]

    # ------------------------------------------------------------------ #
    # Sections
    # ------------------------------------------------------------------ #

    def _territory_header(
        self,
        period_label: str,
        events: Sequence[UpcomingVisit],
        objectives: Optional[Objectives],
    ) -> str:
        stats = self.directory.global_stats()
        metrics = self.directory.period_metrics(events, objectives, self.today)
        completion = metrics.visits_count / metrics.visits_objective * 100
        return (
            f"## Territoire ({period_label})\n"
            f"- {stats.total_practitioners} praticiens ({stats.pneumologues} pneumo, {stats.generalistes} MG)\n"
            f"- {stats.total_kols} KOLs | Volume total: {stats.total_volume / 1000:.0f}K L/an"
            f" | Fidélité moy: {stats.average_loyalty:.1f}/10\n"
            f"- Visites {period_label}: {metrics.visits_count}/{metrics.visits_objective} ({completion:.0f}%)\n"
            f"- Croissance volume: {metrics.volume_growth:+.1f}% | Nouveaux prescripteurs: {metrics.new_prescribers}\n"
        )

    def _specific_section(self, names: Sequence[str]) -> str:
        if not names:
            return ""
        matches = [p for p in self.directory.all_practitioners() if name_matches(p, names)]
        if matches:
            lines = [f"\n## Praticiens Trouvés ({len(matches)})\n"]
            lines.extend(self.directory.profile_context(p.id) for p in matches[:SPECIFIC_MAX_PROFILES])
            return "".join(lines)

        lines = []
        for name in names:
            fuzzy = self.directory.fuzzy_search(name, limit=FUZZY_MAX_PROFILES)
            if fuzzy:
                lines.append(f"\n## Résultats pour \"{name}\" ({len(fuzzy)})\n")
                lines.extend(self.directory.profile_context(p.id) for p in fuzzy[:FUZZY_MAX_PROFILES])
        return "".join(lines)

    def _search_context(self, question: str) -> str:
        if self.search is None:
            return ""
        result = self.search.search(question)
        return result.context if result.results else ""

    def _filtered_section(
        self,
        routing: RouterResult,
        question: str,
        population: Sequence[Practitioner],
    ) -> str:
        searched = self._search_context(question)
        if searched:
            return searched

        terms = routing.search_terms
        filtered = list(population)
        if terms.cities:
            cities = [normalize_text(c) for c in terms.cities]
            filtered = [p for p in filtered if any(c in normalize_text(p.city) for c in cities)]
        if terms.specialties:
            specialties = [normalize_text(s) for s in terms.specialties]
            filtered = [p for p in filtered if any(s in normalize_text(p.specialty) for s in specialties)]
        if terms.is_kol is not None:
            filtered = [p for p in filtered if p.is_kol == terms.is_kol]
        filtered.sort(key=lambda p: p.volume_l, reverse=True)

        lines = [f"\n## Praticiens Filtrés ({len(filtered)})"]
        lines.extend(format_summary_line(p) for p in filtered[:FILTERED_MAX_ROWS])
        if len(filtered) > FILTERED_MAX_ROWS:
            lines.append(f"... et {len(filtered) - FILTERED_MAX_ROWS} autres")

        total_volume = sum(p.volume_l for p in filtered)
        kol_count = sum(1 for p in filtered if p.is_kol)
        avg_loyalty = sum(p.loyalty_score for p in filtered) / (len(filtered) or 1)
        lines.append(
            f"\nStats filtrées: Volume total {total_volume / 1000:.0f}K L/an | {kol_count} KOLs"
            f" | Fidélité moy {avg_loyalty:.1f}/10"
        )
        return "\n".join(lines) + "\n"

    def _aggregated_section(self, population: Sequence[Practitioner]) -> str:
        ids = {p.id for p in population}
        top = sorted(population, key=lambda p: p.volume_l, reverse=True)[:TOP_LIMIT]
        kols = [p for p in self.directory.kols() if p.id in ids]
        at_risk = [p for p in self.directory.at_risk() if p.id in ids]

        lines = [f"\n## Top {TOP_LIMIT} Prescripteurs (volume annuel)"]
        for i, p in enumerate(top, start=1):
            lines.append(
                f"{i}. {p.display_name} — {p.specialty}, {p.city} | {p.volume_l / 1000:.0f}K L/an"
                f" | F:{p.loyalty_score:g}/10 | V{p.vingtile}{' | KOL' if p.is_kol else ''}"
            )

        lines.append(f"\n## KOLs ({len(kols)})")
        for p in kols[:KOL_LIMIT]:
            lines.append(
                f"- {p.display_name} ({p.specialty}, {p.city}) — {p.volume_l / 1000:.0f}K L/an"
                f" | F:{p.loyalty_score:g}/10"
            )

        if at_risk:
            lines.append(f"\n## Praticiens à Risque ({len(at_risk)})")
            for p in at_risk[:AT_RISK_LIMIT]:
                lines.append(
                    f"- {p.display_name} ({p.city}) — F:{p.loyalty_score:g}/10 | {p.volume_l / 1000:.0f}K L/an"
                    f" | Risque: {p.churn_risk}{' | KOL!' if p.is_kol else ''}"
                )

        lines.append("\n## Répartition par Ville")
        for city, count in Counter(p.city for p in population).most_common():
            lines.append(f"- {city}: {count}")
        return "\n".join(lines) + "\n"

    def _full_section(self, question: str, population: Sequence[Practitioner]) -> str:
        parts = [self._search_context(question)]
        top = sorted(population, key=lambda p: p.volume_l, reverse=True)[:FULL_SUMMARY_LIMIT]
        lines = [f"\n## Synthèse ({len(top)} premiers praticiens sur {len(population)}, par volume)"]
        lines.extend(format_summary_line(p) for p in top)
        parts.append("\n".join(lines) + "\n")
        return "".join(parts)

    def _enrichments(
        self,
        question: str,
        population: Sequence[Practitioner],
        events: Sequence[UpcomingVisit],
        objectives: Optional[Objectives],
    ) -> str:
        q = normalize_text(question)
        sections = []

        if self.actions is not None and _has_any(q, ACTION_KEYWORDS):
            actions = self.actions.generate_actions(limit=ACTIONS_LIMIT)
            if actions:
                lines = [f"\n## Actions Recommandées ({len(actions)})"]
                for action in actions:
                    lines.append(
                        f"- [{action.priority}] {action.title} — {action.practitioner_name}: {action.reason}"
                    )
                sections.append("\n".join(lines) + "\n")

        if events and _has_any(q, SCHEDULE_KEYWORDS):
            upcoming = sorted((e for e in events if e.date >= self.today), key=lambda e: (e.date, e.time))
            if upcoming:
                lines = [f"\n## Visites Planifiées ({len(upcoming)})"]
                for event in upcoming[:SCHEDULE_LIMIT]:
                    practitioner = self.directory.get_practitioner(event.practitioner_id)
                    who = practitioner.display_name if practitioner else event.practitioner_id
                    status = "" if event.type == "scheduled" else " (à confirmer)"
                    notes = f" — {event.notes}" if event.notes else ""
                    when = f"{event.date.isoformat()} {event.time}".strip()
                    lines.append(f"- {when} : {who}{status}{notes}")
                sections.append("\n".join(lines) + "\n")

        if objectives is not None and _has_any(q, PERFORMANCE_KEYWORDS):
            done = objectives.visits_completed
            target = max(objectives.visits_monthly, 1)
            sections.append(
                "\n## Performance\n"
                f"- Objectif visites mensuel: {done}/{target} ({done / target * 100:.0f}%)\n"
                f"- Reste à faire: {max(target - done, 0)} visites\n"
                f"- Nouveaux prescripteurs: {objectives.new_prescribers}\n"
            )

        if _has_any(q, NEWS_KEYWORDS):
            news = sorted(
                ((item, p) for p in population for item in p.news),
                key=lambda pair: pair[0].date,
                reverse=True,
            )[:NEWS_LIMIT]
            if news:
                lines = [f"\n## Actualités Récentes ({len(news)})"]
                for item, p in news:
                    lines.append(f"- {item.date.isoformat()} [{item.type}] {p.display_name}: {item.title}")
                sections.append("\n".join(lines) + "\n")

        if _has_any(q, REPORT_KEYWORDS):
            reports = sorted(
                ((visit, p) for p in population for visit in p.visits),
                key=lambda pair: pair[0].date,
                reverse=True,
            )[:REPORTS_LIMIT]
            if reports:
                lines = [f"\n## Derniers Comptes-Rendus ({len(reports)})"]
                for visit, p in reports:
                    lines.append(f"- {visit.date.isoformat()} {p.display_name} ({visit.sentiment}): {visit.summary}")
                sections.append("\n".join(lines) + "\n")

        return "".join(sections)

    def _knowledge(self, question: str, forced: bool) -> Tuple[List[KnowledgeChunk], str]:
        if self.knowledge is None:
            return [], ""
        if not forced and not self.knowledge.should_use(question):
            return [], ""
        result = self.knowledge.retrieve_knowledge(question, top_k=KNOWLEDGE_TOP_K, max_chars=KNOWLEDGE_MAX_CHARS)
        if not result.chunks:
            return [], ""
        logger.info("knowledge_retrieved", chunks=len(result.chunks), forced=forced)
        return list(result.chunks), result.context
