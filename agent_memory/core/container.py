"""
Dependency Injection Container for agent memory.

Builds the backend clients and stores from settings with lazy construction
and explicit lifecycle management. One container is created per process by
whoever owns startup and passed to the components that need it.

Usage:
    # At application startup
    container = DependencyContainer()
    await container.initialize()

    # Build the stores on top of the connected clients
    episodic = container.episodic_store()
    semantic = container.semantic_store()
    goals = container.goal_store()

    # At shutdown
    await container.shutdown()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from agent_memory.config.settings import Settings, get_settings
from agent_memory.core.circuit_breaker import CircuitBreaker
from agent_memory.core.exceptions import ConfigurationError, InitializationError
from agent_memory.core.retry import RetryPolicy

if TYPE_CHECKING:
    from agent_memory.knowledge.neo4j_client import Neo4jClient
    from agent_memory.knowledge.pinecone_client import PineconeClient
    from agent_memory.knowledge.providers import EmbeddingProvider, TextCompletionProvider
    from agent_memory.memory.cache import WorkingMemoryCache
    from agent_memory.memory.episodic_graph import GraphEpisodicStore
    from agent_memory.memory.goals_graph import GraphGoalStore
    from agent_memory.memory.semantic_vector import VectorSemanticStore

logger = structlog.get_logger(__name__)


class DependencyContainer:
    """
    Central container for backend dependencies.

    Clients are created on first access and cached; `initialize()` connects
    them and `shutdown()` releases them.

    Example:
        container = DependencyContainer(settings)
        await container.initialize()

        neo4j = container.neo4j
        embedder = container.embeddings

        await container.shutdown()
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the container.

        Args:
            settings: Application settings. Defaults to get_settings().
        """
        self._settings = settings or get_settings()
        self._retry = RetryPolicy.from_settings(self._settings.resilience)
        self._neo4j: Neo4jClient | None = None
        self._pinecone: PineconeClient | None = None
        self._embeddings: EmbeddingProvider | None = None
        self._completion: TextCompletionProvider | None = None
        self._cache: WorkingMemoryCache | None = None
        self._initialized = False

        logger.info("dependency_container_created")

    @property
    def settings(self) -> Settings:
        """Get application settings."""
        return self._settings

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    @property
    def neo4j(self) -> "Neo4jClient":
        """Get Neo4j client (lazy initialization)."""
        if self._neo4j is None:
            from agent_memory.knowledge.neo4j_client import Neo4jClient

            resilience = self._settings.resilience
            self._neo4j = Neo4jClient(
                uri=self._settings.neo4j_uri,
                user=self._settings.neo4j_user,
                password=self._settings.neo4j_password.get_secret_value(),
                database=self._settings.neo4j_database,
                breaker=CircuitBreaker(
                    name="neo4j",
                    failure_threshold=resilience.circuit_failure_threshold,
                    recovery_timeout=resilience.circuit_recovery_seconds,
                ),
            )
            logger.info("neo4j_client_created")
        return self._neo4j

    @property
    def pinecone(self) -> "PineconeClient":
        """
        Get Pinecone client (lazy initialization).

        Raises:
            ConfigurationError: If no Pinecone API key is configured.
        """
        if self._pinecone is None:
            from agent_memory.knowledge.pinecone_client import PineconeClient

            if self._settings.pinecone_api_key is None:
                raise ConfigurationError("Pinecone API key is required for semantic memory", "pinecone_api_key")

            self._pinecone = PineconeClient(
                api_key=self._settings.pinecone_api_key.get_secret_value(),
                index_name=self._settings.pinecone_index_name,
                dimension=self._settings.embedding.dimensions,
                cloud=self._settings.pinecone_cloud,
                region=self._settings.pinecone_region,
            )
            logger.info("pinecone_client_created")
        return self._pinecone

    @property
    def embeddings(self) -> "EmbeddingProvider":
        """
        Get the embedding provider selected by `embedding.provider`.

        Raises:
            ConfigurationError: If the selected provider has no API key.
        """
        if self._embeddings is None:
            embedding = self._settings.embedding

            if embedding.provider == "ollama":
                from agent_memory.knowledge.ollama_embeddings import OllamaEmbeddingsService

                self._embeddings = OllamaEmbeddingsService(
                    base_url=self._settings.ollama_base_url,
                    model=embedding.model,
                    dimension=embedding.dimensions,
                )
            elif embedding.provider == "cohere":
                from agent_memory.knowledge.cohere_embeddings import CohereEmbeddingsService

                if self._settings.cohere_api_key is None:
                    raise ConfigurationError("Cohere API key is required for cohere embeddings", "cohere_api_key")
                self._embeddings = CohereEmbeddingsService(
                    api_key=self._settings.cohere_api_key.get_secret_value(),
                    model=embedding.model,
                    dimension=embedding.dimensions,
                )
            else:
                from agent_memory.knowledge.embeddings import EmbeddingsService

                if self._settings.openai_api_key is None:
                    raise ConfigurationError("OpenAI API key is required for openai embeddings", "openai_api_key")
                self._embeddings = EmbeddingsService(
                    api_key=self._settings.openai_api_key.get_secret_value(),
                    model=embedding.model,
                    dimension=embedding.dimensions,
                )
            logger.info("embeddings_service_created", provider=embedding.provider, model=embedding.model)
        return self._embeddings

    @property
    def completion(self) -> "TextCompletionProvider | None":
        """Get the completion provider, or None when no Anthropic key is configured."""
        if self._completion is None and self._settings.anthropic_api_key is not None:
            from agent_memory.knowledge.completion import AnthropicCompletionService

            self._completion = AnthropicCompletionService(
                api_key=self._settings.anthropic_api_key.get_secret_value(),
                model=self._settings.completion_model,
            )
            logger.info("completion_service_created", model=self._settings.completion_model)
        return self._completion

    @property
    def cache(self) -> "WorkingMemoryCache":
        """
        Get the working memory cache.

        Raises:
            RuntimeError: If accessed before initialization.
        """
        if self._cache is None:
            raise RuntimeError("Container not initialized. Call initialize() first.")
        return self._cache

    def episodic_store(self) -> "GraphEpisodicStore":
        from agent_memory.memory.episodic_graph import GraphEpisodicStore

        return GraphEpisodicStore(self.neo4j, retry=self._retry)

    def goal_store(self) -> "GraphGoalStore":
        from agent_memory.memory.goals_graph import GraphGoalStore

        return GraphGoalStore(self.neo4j, retry=self._retry)

    def semantic_store(self) -> "VectorSemanticStore":
        from agent_memory.memory.semantic_vector import VectorSemanticStore

        return VectorSemanticStore(self.neo4j, self.pinecone, self.embeddings, retry=self._retry)

    async def initialize(self) -> None:
        """
        Connect all core services.

        Call this at application startup.

        Raises:
            InitializationError: If any core service fails to initialize.
        """
        if self._initialized:
            logger.warning("container_already_initialized")
            return

        logger.info("container_initializing")

        try:
            await self.neo4j.connect()
            logger.info("neo4j_connected")

            self.pinecone.connect()
            self.pinecone.ensure_index()
            logger.info("pinecone_connected")

            if self.embeddings.dimension != self._settings.embedding.dimensions:
                raise ConfigurationError(
                    "Embedding provider dimension does not match embedding.dimensions",
                    "embedding.dimensions",
                )

            from agent_memory.memory.cache import create_working_memory_cache

            self._cache = await create_working_memory_cache(self._settings)

            self._initialized = True
            logger.info("container_initialized")

        except (InitializationError, ConfigurationError):
            raise
        except Exception as e:
            logger.error(
                "container_initialization_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise InitializationError(
                "DependencyContainer",
                f"Failed to initialize dependencies: {e}",
            ) from e

    async def shutdown(self) -> None:
        """
        Shutdown all services gracefully.

        Call this at application shutdown.
        """
        logger.info("container_shutting_down")

        if self._cache is not None:
            await self._cache.close()
            self._cache = None

        if self._neo4j is not None:
            await self._neo4j.close()
            logger.info("neo4j_closed")

        from agent_memory.knowledge.ollama_embeddings import OllamaEmbeddingsService

        if isinstance(self._embeddings, OllamaEmbeddingsService):
            await self._embeddings.close()

        # Pinecone doesn't need explicit close

        self._initialized = False
        logger.info("container_shutdown_complete")

    @property
    def is_initialized(self) -> bool:
        """Check if container has been initialized."""
        return self._initialized
