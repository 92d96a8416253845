"""
Configuration models for the external embedding and completion providers.

Both providers speak the OpenAI-compatible HTTP API, so any gateway exposing
`/embeddings` and `/chat/completions` can be used.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class EmbeddingConfig(BaseModel):
    """Embedding provider settings.

    `dimension` is the deployment-wide vector length. Every stored vector must
    have exactly this many components.
    """

    base_url: str = Field("https://api.openai.com/v1", alias="base_url")
    api_key: str | None = Field(None, alias="api_key")
    model: str = Field("text-embedding-ada-002", alias="model")
    dimension: int = Field(1536, ge=1, alias="dimension")
    timeout_seconds: float = Field(10.0, gt=0, alias="timeout_seconds")
    max_attempts: int = Field(3, ge=1, alias="max_attempts")
    backoff_base_seconds: float = Field(0.5, ge=0, alias="backoff_base_seconds")
    max_input_chars: int = Field(8000, ge=1, alias="max_input_chars")
    fallback_seed: int = Field(42, alias="fallback_seed")


class CompletionConfig(BaseModel):
    """Language-model completion settings used by knowledge extraction."""

    base_url: str = Field("https://api.openai.com/v1", alias="base_url")
    api_key: str | None = Field(None, alias="api_key")
    model: str = Field("gpt-4", alias="model")
    timeout_seconds: float = Field(60.0, gt=0, alias="timeout_seconds")
