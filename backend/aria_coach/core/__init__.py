"""
Core application modules: structured logging, metrics, circuit breaking and
HTTP request context.
"""
