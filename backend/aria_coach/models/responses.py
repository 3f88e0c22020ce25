"""
Response models for API endpoints.

These models define the structure of API responses.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from aria_coach.services.ai.schema import PipelineResult
from aria_coach.services.llm.providers import ModelOption


class CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AskResponse(PipelineResult):
    """Pipeline result plus the conversation it belongs to."""
    conversation_id: str


class ProviderSummary(CamelResponse):
    id: str
    name: str
    description: str
    default_model: str
    router_model: Optional[str] = None
    models: List[ModelOption]
    needs_base_url: bool
    key_prefix: Optional[str] = None


class LLMConfigResponse(CamelResponse):
    configured: bool
    provider: Optional[str] = None
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    deployment: Optional[str] = None
    api_version: Optional[str] = None
