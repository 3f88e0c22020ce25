"""ARIA Coach: AI orchestration engine for the pharmaceutical CRM assistant."""

__version__ = "1.0.0"
