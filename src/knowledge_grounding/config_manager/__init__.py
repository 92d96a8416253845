from .main import Config
from .knowledge_base import (
    ContextConfig,
    ExtractionConfig,
    KnowledgeBaseConfig,
    SearchConfig,
)
from .providers import CompletionConfig, EmbeddingConfig
from .utils import load_config, read_yaml, validate_config

__all__ = [
    "Config",
    "KnowledgeBaseConfig",
    "SearchConfig",
    "ContextConfig",
    "ExtractionConfig",
    "EmbeddingConfig",
    "CompletionConfig",
    "load_config",
    "read_yaml",
    "validate_config",
]
