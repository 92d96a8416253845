"""Hybrid semantic retrieval and context assembly for conversational grounding."""

__version__ = "0.1.0"
