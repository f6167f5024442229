"""
Application Settings.

Centralized configuration using Pydantic Settings with environment variable loading.
Connection credentials are flat fields (NEO4J_URI, PINECONE_API_KEY, ...); tunable
memory behaviour is grouped in nested models addressed with a double underscore:

    MEMORY__SIMILARITY_THRESHOLD=0.75
    SEMANTIC_EXTRACTION__CATEGORIES='["AI", "Programming"]'
    WORKING_MEMORY__MAX_TOKENS=6000

Production Mode:
    When app_env="production", additional validations apply:
    - debug must be False
    - neo4j_password must not be the development default
"""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EmbeddingSettings(BaseModel):
    """External embedding provider selection."""

    provider: Literal["ollama", "cohere", "openai"] = Field(
        default="ollama",
        description="Embedding backend used for concepts and queries",
    )
    model: str = Field(default="nomic-embed-text", description="Embedding model name")
    dimensions: int = Field(default=768, gt=0, description="Vector dimension of the index")


class SemanticExtractionSettings(BaseModel):
    """Episodic -> semantic promotion settings."""

    enabled: bool = True
    min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    max_concepts_per_memory: int = Field(default=3, ge=1)
    enable_relationship_extraction: bool = True
    categories: list[str] = Field(
        default=["AI", "Technology", "Programming", "Science", "General"],
    )
    batch_size: int = Field(default=5, ge=1)
    merge_threshold: float = Field(
        default=0.92,
        ge=-1.0,
        le=1.0,
        description="Cosine similarity above which a candidate merges into an existing concept",
    )
    max_episodes_per_run: int = Field(default=50, ge=1)
    temperature: float = Field(default=0.3, ge=0.0, le=1.0)
    max_output_tokens: int = Field(default=2000, gt=0)


class MemorySettings(BaseModel):
    """Retrieval and ranking settings."""

    max_context_memories: int = Field(default=10, ge=1)
    similarity_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    max_episodic: int = Field(default=20, ge=0)
    max_semantic: int = Field(default=10, ge=0)
    recency_weight: float = Field(default=0.4, ge=0.0)
    similarity_weight: float = Field(default=0.4, ge=0.0)
    importance_weight: float = Field(default=0.2, ge=0.0)
    recency_half_life_hours: float = Field(default=24.0, gt=0.0)


class WorkingMemorySettings(BaseModel):
    """Session-scoped working memory settings."""

    max_tokens: int = Field(default=4000, gt=0)
    compression_ratio: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Fraction of max_tokens freed when compression runs",
    )
    max_active_goals: int = Field(default=5, ge=1)
    cache_ttl_seconds: int = Field(default=300, ge=0)
    stale_retention_seconds: int = Field(default=86400, ge=0)
    history_size: int = Field(default=20, ge=1)
    recent_episodes: int = Field(default=50, ge=1)
    llm_topic_extraction: bool = False
    llm_goal_extraction: bool = False


class ResilienceSettings(BaseModel):
    """Timeouts and retry bounds for every backend call."""

    timeout_seconds: float = Field(default=10.0, gt=0.0)
    max_attempts: int = Field(default=3, ge=1)
    min_backoff_seconds: float = Field(default=0.5, ge=0.0)
    max_backoff_seconds: float = Field(default=8.0, ge=0.0)
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_recovery_seconds: float = Field(default=30.0, gt=0.0)


class ExtractionQueueSettings(BaseModel):
    """Background extraction queue settings."""

    max_size: int = Field(default=100, ge=1)
    overflow_policy: Literal["reject_new", "drop_oldest"] = "reject_new"
    workers: int = Field(default=1, ge=1)
    sweep_interval_seconds: int = Field(default=300, ge=1)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Neo4j (Episodic graph + semantic relationships)
    # -------------------------------------------------------------------------
    neo4j_uri: str = Field(default="bolt://localhost:7687", description="Neo4j connection URI (bolt://)")
    neo4j_user: str = Field(default="neo4j", description="Neo4j username")
    neo4j_password: SecretStr = Field(default=SecretStr("password"), description="Neo4j password")
    neo4j_database: str = Field(default="neo4j", description="Neo4j database name")

    # -------------------------------------------------------------------------
    # Pinecone (Vector Store)
    # -------------------------------------------------------------------------
    pinecone_api_key: SecretStr | None = Field(default=None, description="Pinecone API key")
    pinecone_index_name: str = Field(
        default="agent-semantic-memory",
        description="Pinecone index name",
    )
    pinecone_cloud: str = Field(default="aws", description="Serverless cloud")
    pinecone_region: str = Field(default="us-east-1", description="Serverless region")

    # -------------------------------------------------------------------------
    # Embedding providers
    # -------------------------------------------------------------------------
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server used for local embeddings",
    )
    cohere_api_key: SecretStr | None = Field(default=None, description="Cohere API key")
    openai_api_key: SecretStr | None = Field(default=None, description="OpenAI API key")

    # -------------------------------------------------------------------------
    # Anthropic (Completion capability)
    # -------------------------------------------------------------------------
    anthropic_api_key: SecretStr | None = Field(
        default=None, description="Anthropic API key for Claude"
    )
    completion_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model used for concept, topic and goal extraction",
    )

    # -------------------------------------------------------------------------
    # Redis (Working memory cache)
    # -------------------------------------------------------------------------
    redis_url: str | None = Field(default=None, description="Redis connection URL")
    redis_key_prefix: str = Field(default="agent_memory:wm", description="Working memory key prefix")

    # -------------------------------------------------------------------------
    # Memory behaviour
    # -------------------------------------------------------------------------
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    semantic_extraction: SemanticExtractionSettings = Field(
        default_factory=SemanticExtractionSettings
    )
    memory: MemorySettings = Field(default_factory=MemorySettings)
    working_memory: WorkingMemorySettings = Field(default_factory=WorkingMemorySettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    extraction_queue: ExtractionQueueSettings = Field(default_factory=ExtractionQueueSettings)

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="structlog renderer",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Validate cross-field constraints."""
        errors = []

        weights = (
            self.memory.recency_weight
            + self.memory.similarity_weight
            + self.memory.importance_weight
        )
        if weights <= 0:
            errors.append("memory weights must not all be zero")

        if self.resilience.max_backoff_seconds < self.resilience.min_backoff_seconds:
            errors.append("resilience.max_backoff_seconds must be >= min_backoff_seconds")

        if self.app_env == "production":
            if self.debug:
                errors.append("debug must be False in production")
            if self.neo4j_password.get_secret_value() == "password":
                errors.append("neo4j_password must be set in production")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")

        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings if needed.
    """
    return Settings()
