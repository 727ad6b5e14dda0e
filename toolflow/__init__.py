"""
toolflow - tool-use conversation orchestrator for LLM endpoints.

This package drives multi-turn tool-use conversations: it calls a model,
dispatches the tools the model asks for against registered handlers, feeds
the results back, and records every step of the run for auditing and history.
"""

__version__ = "0.1.0"
