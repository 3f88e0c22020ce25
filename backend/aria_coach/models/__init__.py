"""Pydantic models for API requests and responses."""

from .requests import AskRequest, LLMConfigRequest, OnDeviceLoadRequest
from .responses import AskResponse, LLMConfigResponse, ProviderSummary

__all__ = [
    "AskRequest",
    "LLMConfigRequest",
    "OnDeviceLoadRequest",
    "AskResponse",
    "LLMConfigResponse",
    "ProviderSummary",
]
