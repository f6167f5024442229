"""
Configuration Management.

Centralized configuration using Pydantic Settings.

Configuration sources (in order of precedence):
1. Environment variables
2. .env file
3. Default values

All sensitive values (API keys, passwords) are loaded from environment
variables and never committed to source control.

Example:
    from agent_memory.config import get_settings

    settings = get_settings()
    threshold = settings.memory.similarity_threshold
"""

from agent_memory.config.settings import (
    EmbeddingSettings,
    ExtractionQueueSettings,
    MemorySettings,
    ResilienceSettings,
    SemanticExtractionSettings,
    Settings,
    WorkingMemorySettings,
    get_settings,
)

__all__ = [
    "Settings",
    "get_settings",
    "EmbeddingSettings",
    "SemanticExtractionSettings",
    "MemorySettings",
    "WorkingMemorySettings",
    "ResilienceSettings",
    "ExtractionQueueSettings",
]
