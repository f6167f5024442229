"""
Agent Memory - conversational memory for LLM agents.

This package contains the modules of the memory system:
- memory: Episodic and semantic stores, context assembly, working memory
  and semantic extraction
- knowledge: Neo4j and Pinecone clients plus embedding and completion providers
- core: Exceptions, resilience primitives, locks, logging and the dependency container
- config: Pydantic settings and configuration
- monitoring: Prometheus metrics
- service: MemoryService, the facade agent code talks to
"""

__version__ = "0.1.0"
