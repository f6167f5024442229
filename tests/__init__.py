"""
agent-memory test suite.

- conftest.py: fake embedder and completion provider, in-memory store fixtures
- unit/: one module per component; Neo4j, Pinecone and Redis clients are mocked

Run tests with: pytest
"""
