"""
Keyword-scored knowledge base (reference ``KnowledgeRetriever``).

Domain passages (BPCO guidelines, oxygen therapy, reimbursement rules,
competitors) are scored against the question:
- title hits x15, content hits x3 (capped at 5 per keyword)
- +20 per matching tag, +10 per query bigram found verbatim
- priority 1 passages x1.3, priority 3 passages x0.8

Only "domain" questions (as opposed to CRM data questions) trigger retrieval.

Environment configuration (read by ``get_knowledge_base``):
- KNOWLEDGE_BASE_PATH: passages JSON (default: data/knowledge_base.json)
"""
import json
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from aria_coach.core.logging import get_logger
from aria_coach.services.crm.dataset import normalize_text
from aria_coach.services.crm.models import KnowledgeChunk, KnowledgeResult

logger = get_logger(__name__)

MIN_SCORE = 10.0

STOP_WORDS = frozenset({
    "les", "des", "une", "est", "que", "qui", "quoi", "pour", "par", "sur", "dans", "avec",
    "son", "ses", "leur", "leurs", "aux", "mes", "tes", "nos", "vos", "pas", "plus", "moi",
    "toi", "elle", "ils", "elles", "nous", "vous", "cette", "ces", "cet", "quel", "quelle",
    "quels", "quelles", "comment", "pourquoi", "quand", "fait", "faire", "peux", "peut",
    "dis", "donne", "the", "and",
})

KEYWORD_TAGS: Dict[str, Tuple[str, ...]] = {
    "bpco": ("bpco",),
    "gold": ("bpco", "guidelines"),
    "has": ("guidelines",),
    "oxygene": ("oxygenotherapie",),
    "oxygenotherapie": ("oxygenotherapie",),
    "concentrateur": ("oxygenotherapie", "materiel"),
    "extracteur": ("oxygenotherapie", "materiel"),
    "lppr": ("remboursement",),
    "lpp": ("remboursement",),
    "remboursement": ("remboursement",),
    "tarif": ("remboursement",),
    "forfait": ("remboursement",),
    "concurrent": ("concurrence",),
    "vivisol": ("concurrence",),
    "bastide": ("concurrence",),
    "linde": ("concurrence",),
    "telesuivi": ("telesuivi",),
    "apnee": ("sommeil",),
    "ppc": ("sommeil",),
    "orkyn": ("air_liquide",),
    "air liquide": ("air_liquide",),
    "epidemiologie": ("epidemiologie",),
    "prevalence": ("epidemiologie",),
}

DOMAIN_INDICATORS = (
    "produit", "catalogue", "gamme", "offre", "service", "solution", "dispositif",
    "materiel", "equipement", "bpco", "oxygene", "o2", "gold", "has ", "lppr", "lpp",
    "reglementation", "remboursement", "tarif", "forfait", "epidemiologie", "prevalence",
    "spirometrie", "vems", "exacerbation", "traitement", "recommandation", "indication",
    "concentrateur", "extracteur", "ventilation", "vni", "ppc", "apnee", "sommeil",
    "telesuivi", "telesurveillance", "qu'est-ce que", "c'est quoi", "explique", "definition",
    "comment fonctionne", "concurrent", "concurrence", "vivisol", "bastide", "linde",
    "marche", "psad", "orkyn", "air liquide", "sevrage", "tabac",
)


class KnowledgePassage(BaseModel):
    id: str
    title: str
    content: str
    source: str
    source_url: Optional[str] = Field(None, alias="sourceUrl")
    tags: List[str] = Field(default_factory=list)
    priority: int = 2


def extract_keywords(text: str) -> List[str]:
    words = re.sub(r"[^\w\s'-]", " ", normalize_text(text)).split()
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


class KeywordKnowledgeBase:
    """Scores passages by keyword, tag and bigram overlap."""

    def __init__(self, passages: Sequence[KnowledgePassage]):
        self.passages = list(passages)

    @classmethod
    def from_file(cls, path: Path) -> "KeywordKnowledgeBase":
        with Path(path).open("r", encoding="utf-8") as f:
            raw = json.load(f)
        items = raw.get("passages", []) if isinstance(raw, dict) else raw
        passages = [KnowledgePassage.model_validate(item) for item in items]
        logger.info("knowledge_base_loaded", path=str(path), passages=len(passages))
        return cls(passages)

    def __len__(self) -> int:
        return len(self.passages)

    def _detected_tags(self, normalized: str) -> set:
        tags = set()
        for keyword, keyword_tags in KEYWORD_TAGS.items():
            if keyword in normalized:
                tags.update(keyword_tags)
        return tags

    def should_use(self, question: str) -> bool:
        normalized = f" {normalize_text(question)} "
        if self._detected_tags(normalized):
            return True
        return any(indicator in normalized for indicator in DOMAIN_INDICATORS)

    def _score(self, passage: KnowledgePassage, keywords: List[str], tags: set, query_words: List[str]) -> float:
        title = normalize_text(passage.title)
        text = normalize_text(f"{passage.title} {passage.content}")
        score = 0.0
        for keyword in keywords:
            title_hits = title.count(keyword)
            content_hits = text.count(keyword)
            score += title_hits * 15 + min(content_hits, 5) * 3
        score += 20 * len(tags.intersection(passage.tags))
        for first, second in zip(query_words, query_words[1:]):
            bigram = f"{first} {second}"
            if len(bigram) > 5 and bigram in text:
                score += 10
        if passage.priority == 1:
            score *= 1.3
        elif passage.priority == 3:
            score *= 0.8
        return score

    def retrieve_knowledge(self, query: str, top_k: int = 4, max_chars: int = 3000) -> KnowledgeResult:
        """Top passages for ``query`` and their formatted context (bounded by ``max_chars``)."""
        if not self.should_use(query):
            return KnowledgeResult()

        normalized = normalize_text(query)
        keywords = extract_keywords(query)
        tags = self._detected_tags(f" {normalized} ")
        query_words = normalized.split()

        scored = [(self._score(p, keywords, tags, query_words), p) for p in self.passages]
        scored = [item for item in scored if item[0] >= MIN_SCORE]
        scored.sort(key=lambda item: item[0], reverse=True)

        chunks = [
            KnowledgeChunk(
                title=p.title,
                content=p.content,
                source=p.source,
                source_url=p.source_url,
                score=round(score, 1),
            )
            for score, p in scored[:top_k]
        ]
        return KnowledgeResult(chunks=chunks, context=format_knowledge_context(chunks, max_chars))


def format_knowledge_context(chunks: Sequence[KnowledgeChunk], max_chars: int = 3000) -> str:
    if not chunks:
        return ""
    parts = [
        f"\n## Base de Connaissances Métier ({len(chunks)} sources pertinentes)\n"
        "_Informations issues de sources vérifiées. Cite la source quand c'est pertinent._\n"
    ]
    used = len(parts[0])
    for chunk in chunks:
        block = f"\n### {chunk.title}\n_Source: {chunk.source}_\n{chunk.content}\n"
        if used + len(block) > max_chars:
            remaining = max_chars - used
            if remaining > 200:
                parts.append(block[:remaining].rstrip() + "…\n")
            break
        parts.append(block)
        used += len(block)
    return "".join(parts)


_knowledge_base: Optional[KeywordKnowledgeBase] = None


def get_knowledge_base() -> KeywordKnowledgeBase:
    global _knowledge_base
    if _knowledge_base is None:
        path = Path(os.getenv("KNOWLEDGE_BASE_PATH", "data/knowledge_base.json"))
        if path.exists():
            _knowledge_base = KeywordKnowledgeBase.from_file(path)
        else:
            logger.warning("knowledge_base_missing", path=str(path))
            _knowledge_base = KeywordKnowledgeBase([])
    return _knowledge_base
