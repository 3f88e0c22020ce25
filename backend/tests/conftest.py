"""
Shared fixtures: a small CRM dataset, a knowledge base and isolation of the
process-wide singletons.
"""
from typing import List

import pytest

from aria_coach.services.crm.dataset import CRMDataset
from aria_coach.services.crm.knowledge import KeywordKnowledgeBase, KnowledgePassage
from aria_coach.services.crm.models import Practitioner, UpcomingVisit
from tests.fakes import TODAY, make_practitioner


@pytest.fixture
def practitioners() -> List[Practitioner]:
    return [
        make_practitioner(id="pr_1", firstName="Jean", lastName="Martin", isKOL=True, vingtile=1,
                          volumeL=185000, loyaltyScore=8.5, lastVisitDate="2026-09-02"),
        make_practitioner(id="pr_2", firstName="Sophie", lastName="Dubois", city="Grenoble", isKOL=True,
                          vingtile=2, volumeL=142000, loyaltyScore=5.2, lastVisitDate="2026-06-30",
                          churnRisk="medium"),
        make_practitioner(id="pr_3", firstName="Pierre", lastName="Leroy", vingtile=4, volumeL=96000,
                          loyaltyScore=7.4, lastVisitDate="2026-10-01"),
        make_practitioner(id="pr_4", firstName="Isabelle", lastName="Moreau", city="Saint-Étienne",
                          isKOL=True, vingtile=3, volumeL=118000, loyaltyScore=3.6,
                          lastVisitDate="2026-05-18", churnRisk="high"),
        make_practitioner(id="pr_5", firstName="Michel", lastName="Garcia", specialty="Médecin généraliste",
                          city="Villeurbanne", vingtile=6, volumeL=38000, loyaltyScore=8.1,
                          lastVisitDate="2026-09-24"),
        make_practitioner(id="pr_6", firstName="François", lastName="Girard", specialty="Médecin généraliste",
                          vingtile=12, volumeL=14500, loyaltyScore=6.0, lastVisitDate=None),
    ]


@pytest.fixture
def dataset(practitioners) -> CRMDataset:
    visits = [
        UpcomingVisit.model_validate({
            "id": "uv_1", "practitionerId": "pr_2", "date": "2026-10-21", "time": "09:30",
        }),
    ]
    return CRMDataset(practitioners, upcoming_visits=visits, today=TODAY)


@pytest.fixture
def knowledge_base() -> KeywordKnowledgeBase:
    return KeywordKnowledgeBase([
        KnowledgePassage(
            id="kb_oxygen",
            title="Indications de l'oxygénothérapie de longue durée",
            content="L'oxygénothérapie de longue durée est indiquée lorsque la PaO2 est inférieure à 55 mmHg.",
            source="HAS",
            tags=["oxygenotherapie", "guidelines"],
            priority=1,
        ),
        KnowledgePassage(
            id="kb_lppr",
            title="Remboursement LPPR des forfaits",
            content="Les prestations sont remboursées sous forme de forfaits hebdomadaires LPPR.",
            source="Assurance Maladie",
            tags=["remboursement"],
            priority=1,
        ),
    ])


@pytest.fixture(autouse=True)
def isolated_singletons(monkeypatch, tmp_path):
    """Fresh config store and sessions per test; no real on-device engine."""
    from aria_coach.services.ai import conversation, orchestration
    from aria_coach.services.llm import config_store

    monkeypatch.setenv("LLM_CONFIG_PATH", str(tmp_path / "llm_config.json"))
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    monkeypatch.setenv("ENABLE_ON_DEVICE_LLM", "false")
    monkeypatch.setattr(config_store, "_config_store", None)
    monkeypatch.setattr(conversation, "_session_store", None)
    monkeypatch.setattr(orchestration, "_coach_pipeline", None)
