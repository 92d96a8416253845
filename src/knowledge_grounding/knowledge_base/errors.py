"""
Error taxonomy for the knowledge base.

Recoverable conditions (provider outages, malformed extractions) are handled
inside the knowledge base and only show up as degraded-mode metadata or log
lines. Write rejections and ownership violations are raised to the caller.
"""


class KnowledgeBaseError(Exception):
    """Base class for all knowledge base errors."""


class ProviderUnavailable(KnowledgeBaseError):
    """An embedding or language-model call failed (outage, rate limit, timeout)."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedExtraction(KnowledgeBaseError):
    """Language-model output could not be parsed into extracted facts."""


class DimensionMismatch(KnowledgeBaseError, ValueError):
    """A vector does not have the deployment's embedding dimensionality."""

    def __init__(self, expected: int, actual: int | None):
        got = "no embedding" if actual is None else f"{actual} dimensions"
        super().__init__(f"Expected an embedding of {expected} dimensions, got {got}")
        self.expected = expected
        self.actual = actual


class OwnerMismatch(KnowledgeBaseError, PermissionError):
    """An operation touched a knowledge item owned by another account."""

    def __init__(self, item_id: str):
        super().__init__(f"'{item_id}' belongs to a different owner")
        self.item_id = item_id


class StoreUnavailable(KnowledgeBaseError):
    """The backing datastore could not be reached or queried."""
