"""Domain services: LLM access, coach agents and CRM collaborators."""
