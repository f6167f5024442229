"""
Knowledge Infrastructure.

Backends and external capabilities behind the memory stores:

- neo4j_client: Neo4j connection management and Cypher query execution
- pinecone_client: Pinecone vector operations, one namespace per user
- ollama_embeddings: Local embeddings via Ollama (default, nomic-embed-text)
- cohere_embeddings: Cohere embed models
- embeddings: OpenAI text-embedding-3 models
- completion: Claude completions for extraction prompts

Example:
    from agent_memory.knowledge import Neo4jClient, OllamaEmbeddingsService

    async with Neo4jClient(uri, user, password) as neo4j:
        records = await neo4j.run_query("MATCH (m:EpisodicMemory) RETURN count(m) AS c")
"""

from agent_memory.knowledge.cohere_embeddings import CohereEmbeddingsService
from agent_memory.knowledge.completion import AnthropicCompletionService
from agent_memory.knowledge.embeddings import EmbeddingsService
from agent_memory.knowledge.neo4j_client import Neo4jClient, schema_statements
from agent_memory.knowledge.ollama_embeddings import OllamaEmbeddingsService
from agent_memory.knowledge.pinecone_client import ConceptMetadata, PineconeClient, VectorRecord
from agent_memory.knowledge.providers import EmbeddingProvider, TextCompletionProvider

__all__ = [
    "Neo4jClient",
    "schema_statements",
    "PineconeClient",
    "ConceptMetadata",
    "VectorRecord",
    "EmbeddingProvider",
    "TextCompletionProvider",
    "OllamaEmbeddingsService",
    "CohereEmbeddingsService",
    "EmbeddingsService",
    "AnthropicCompletionService",
]
