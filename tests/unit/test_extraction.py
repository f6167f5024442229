"""Unit tests for the semantic extraction pipeline."""

import json

import pytest

from agent_memory.core.exceptions import ProviderResponseError
from agent_memory.core.retry import RetryPolicy
from agent_memory.memory.extraction import SemanticExtractionPipeline, parse_json_object
from agent_memory.memory.models import (
    EpisodeContext,
    EpisodeKind,
    EpisodeMetadata,
    EpisodicMemory,
    SemanticMemory,
    SemanticMetadata,
)
from agent_memory.memory.semantic import InMemorySemanticStore
from tests.conftest import DIMENSION, FakeCompletion, FakeEmbedder


def extraction_response(*concepts, relationships=()) -> str:
    return json.dumps({"concepts": list(concepts), "relationships": list(relationships), "confidence": 0.8})


def candidate(name: str, description: str, category: str = "Programming", confidence: float = 0.8, **extra) -> dict:
    return {
        "concept": name,
        "description": description,
        "category": category,
        "confidence": confidence,
        "keywords": [name.lower()],
        **extra,
    }


def unit_vector(index: int, tilt: float = 0.0) -> list[float]:
    vector = [0.0] * DIMENSION
    vector[index] = 1.0
    vector[(index + 1) % DIMENSION] = tilt
    return vector


class TestParseJsonObject:
    """Test recovery of JSON objects from model output."""

    def test_plain_json(self):
        assert parse_json_object('{"concepts": []}') == {"concepts": []}

    def test_code_fenced_json(self):
        text = '```json\n{"concepts": [1]}\n```'

        assert parse_json_object(text) == {"concepts": [1]}

    def test_json_wrapped_in_prose(self):
        text = 'Here is the result: {"concepts": []} Hope that helps.'

        assert parse_json_object(text) == {"concepts": []}

    def test_unparseable_raises(self):
        with pytest.raises(ValueError):
            parse_json_object("no json here")

    def test_non_object_raises(self):
        with pytest.raises(ValueError):
            parse_json_object("[1, 2, 3]")


class TestSemanticExtractionPipeline:
    """Test the episode -> concept promotion flow."""

    @pytest.fixture
    async def episode(self, episodic_store):
        return await episodic_store.store(
            EpisodicMemory(
                user_id="u1",
                session_id="s1",
                content="I like Python because it is a readable programming language",
                metadata=EpisodeMetadata(importance=0.7, tags=["python"]),
            )
        )

    def build(self, episodic_store, semantic_store, embedder, completion, settings):
        return SemanticExtractionPipeline(
            episodic_store,
            semantic_store,
            embedder,
            completion,
            settings.semantic_extraction,
            retry=RetryPolicy(max_attempts=1),
        )

    @pytest.mark.asyncio
    async def test_new_concept_is_created(self, episodic_store, semantic_store, embedder, settings, episode):
        completion = FakeCompletion(
            [extraction_response(candidate("Python", "A readable programming language", sourceMemoryId=episode.id))]
        )
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        stats = await pipeline.run("u1")

        assert stats.created == 1
        assert stats.merged == 0
        stored = await semantic_store.find_by_concept("u1", "Python", "Programming")
        assert stored.metadata.source == "semantic_extraction"
        assert stored.metadata.extraction_metadata.source_memory_ids == [episode.id]
        assert episode.content in completion.prompts[0]

    @pytest.mark.asyncio
    async def test_existing_concept_is_merged(self, episodic_store, semantic_store, embedder, settings, episode):
        """Re-extracting a known concept bumps access_count and keeps one concept."""
        existing = await semantic_store.store(
            SemanticMemory(
                user_id="u1",
                concept="Python",
                description="A programming language",
                metadata=SemanticMetadata(category="Programming", confidence=0.8),
            )
        )
        completion = FakeCompletion(
            [extraction_response(candidate("Python", "A readable programming language", sourceMemoryId=episode.id))]
        )
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        stats = await pipeline.run("u1")

        merged = await semantic_store.get(existing.id)
        assert stats.merged == 1
        assert merged.metadata.confidence == pytest.approx(0.8)
        assert merged.metadata.access_count == 1
        assert (await semantic_store.stats("u1")).count == 1

    @pytest.mark.asyncio
    async def test_near_duplicate_merges_by_similarity(self, episodic_store, settings, episode):
        embedder = FakeEmbedder(
            vectors={
                "Python: A programming language": unit_vector(0),
                "Python 3: The current Python language": unit_vector(0, tilt=0.3),
            }
        )
        semantic_store = InMemorySemanticStore(embedder)
        existing = await semantic_store.store(
            SemanticMemory(
                user_id="u1",
                concept="Python",
                description="A programming language",
                metadata=SemanticMetadata(category="Programming", confidence=0.75),
            )
        )
        completion = FakeCompletion(
            [extraction_response(candidate("Python 3", "The current Python language", confidence=0.9))]
        )
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        stats = await pipeline.run("u1")

        merged = await semantic_store.get(existing.id)
        assert stats.merged == 1
        assert merged.concept == "Python"
        assert merged.metadata.confidence == pytest.approx(0.9)
        assert (await semantic_store.stats("u1")).count == 1

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent_on_concept_count(self, episodic_store, semantic_store, embedder, settings, episode):
        response = extraction_response(candidate("Python", "A readable programming language"))
        completion = FakeCompletion([response, response])
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        await pipeline.run("u1")
        await pipeline.run("u1")

        assert (await semantic_store.stats("u1")).count == 1
        summary = await pipeline.get_extraction_stats("u1")
        assert summary.total_concepts == 1
        assert summary.total_extractions == 2

    @pytest.mark.asyncio
    async def test_low_confidence_and_unknown_category_skipped(
        self, episodic_store, semantic_store, embedder, settings, episode
    ):
        completion = FakeCompletion(
            [
                extraction_response(
                    candidate("Hunch", "A vague idea", confidence=0.3),
                    candidate("Cooking", "Preparing food", category="Food"),
                    candidate("Python", "A readable programming language"),
                )
            ]
        )
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        stats = await pipeline.run("u1")

        assert stats.created == 1
        assert stats.skipped_candidates == 2

    @pytest.mark.asyncio
    async def test_unparseable_batch_counts_as_failed(self, episodic_store, semantic_store, embedder, settings, episode):
        completion = FakeCompletion(["I could not find any concepts."])
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        stats = await pipeline.run("u1")

        assert stats.failed_batches == 1
        assert stats.created == 0

    @pytest.mark.asyncio
    async def test_provider_failure_counts_as_failed(self, episodic_store, semantic_store, embedder, settings, episode):
        completion = FakeCompletion([ProviderResponseError("anthropic", "empty completion")])
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        stats = await pipeline.run("u1")

        assert stats.failed_batches == 1

    @pytest.mark.asyncio
    async def test_relationships_link_concepts_from_the_run(
        self, episodic_store, semantic_store, embedder, settings, episode
    ):
        completion = FakeCompletion(
            [
                extraction_response(
                    candidate("Python", "A readable programming language"),
                    candidate("Django", "A Python web framework"),
                    relationships=[
                        {
                            "sourceConcept": "Django",
                            "targetConcept": "Python",
                            "relationshipType": "related",
                            "confidence": 0.8,
                        },
                        {
                            "sourceConcept": "Django",
                            "targetConcept": "Unknown",
                            "relationshipType": "related",
                            "confidence": 0.8,
                        },
                    ],
                )
            ]
        )
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        stats = await pipeline.run("u1")

        python = await semantic_store.find_by_concept("u1", "Python", "Programming")
        django = await semantic_store.find_by_concept("u1", "Django", "Programming")
        assert stats.extracted_relationships == 1
        assert python.relationships.related == [django.id]

    @pytest.mark.asyncio
    async def test_note_episodes_are_mined(self, episodic_store, semantic_store, embedder, completion, settings):
        await episodic_store.store(
            EpisodicMemory(
                user_id="u1",
                session_id="s1",
                content="Prefers Rust for systems work",
                context=EpisodeContext(kind=EpisodeKind.NOTE),
                metadata=EpisodeMetadata(tags=["rust"], source="manual"),
            )
        )
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        await pipeline.run("u1")

        assert len(completion.prompts) == 1
        assert "Prefers Rust for systems work" in completion.prompts[0]

    @pytest.mark.asyncio
    async def test_disabled_pipeline_does_nothing(self, episodic_store, semantic_store, embedder, completion, settings, episode):
        settings.semantic_extraction.enabled = False
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        stats = await pipeline.run("u1")

        assert stats.extracted_concepts == 0
        assert completion.prompts == []

    @pytest.mark.asyncio
    async def test_extraction_stats_empty_user(self, episodic_store, semantic_store, embedder, completion, settings):
        pipeline = self.build(episodic_store, semantic_store, embedder, completion, settings)

        summary = await pipeline.get_extraction_stats("nobody")

        assert summary.total_concepts == 0
        assert summary.last_extraction is None
