"""
Request models for API endpoints.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aria_coach.services.crm.models import Objectives, Practitioner, UpcomingVisit


class CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AskRequest(CamelRequest):
    """Question for the coach; omitted data defaults to the server-side dataset."""
    question: str = Field(..., min_length=1, max_length=4000)
    conversation_id: Optional[str] = None
    period_label: str = "ce mois"
    entities: Optional[List[Practitioner]] = None
    events: Optional[List[UpcomingVisit]] = None
    objectives: Optional[Objectives] = None


class LLMConfigRequest(CamelRequest):
    provider: Optional[str] = None
    api_key: str = ""
    model: Optional[str] = None
    base_url: Optional[str] = None
    deployment: Optional[str] = None
    api_version: Optional[str] = None


class OnDeviceLoadRequest(CamelRequest):
    model_id: Optional[str] = None
