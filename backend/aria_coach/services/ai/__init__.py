"""
Coach AI pipeline.

Agents (router, chart, response) call LLMs only through the fallback
orchestrator. Data always comes from the CRM collaborators: chart points are
computed locally from the specification, never produced by a model.
"""
