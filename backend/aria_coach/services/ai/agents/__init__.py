"""Coach agents: intent routing, chart specification and answer writing."""
