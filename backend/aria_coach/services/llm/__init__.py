"""
LLM access layer: provider adapters, configuration, invocation and the
configured -> local -> on-device fallback chain.
"""
