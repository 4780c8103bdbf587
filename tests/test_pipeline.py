"""
Unit tests for chunked generation.

Tests chunk planning, the bounded refinement loop, context carry-over,
similarity reuse, citations and cancellation.
"""

import os
import re
import shutil
import tempfile

import pytest

from ai_credit_ledger.config.loader import GenerationConfig, LedgerConfig
from ai_credit_ledger.core.chunking import ChunkGenerator, build_carryover
from ai_credit_ledger.core.collaborators import CitationResult, DetectionScan
from ai_credit_ledger.core.errors import GenerationCancelled, GenerationFailure, InvalidAmount
from ai_credit_ledger.core.pipeline import (
    CancellationToken,
    GenerationPipeline,
    GenerationRequest,
)
from ai_credit_ledger.core.prompts import ChunkBrief, ChunkRole, chunk_role
from ai_credit_ledger.core.quality import QualityGate, Severity
from ai_credit_ledger.core.similarity import SimilarityCache
from ai_credit_ledger.storage.repository import ContentRepository, initialize_schema

WORDS = ["river", "valley", "energy", "market", "policy", "growth", "people", "region", "future", "change"]
TARGET = re.compile(r"Target word count: (\d+) words")


def make_text(n: int, offset: int = 0) -> str:
    """n words in ten-word sentences."""
    words = [WORDS[(i + offset) % len(WORDS)] for i in range(n)]
    sentences = [" ".join(words[i:i + 10]).capitalize() + "." for i in range(0, n, 10)]
    return " ".join(sentences)


class FakeGenerator:
    """Writes the number of words the prompt asks for, scaled by `scale`."""

    def __init__(self, scale: float = 1.0, fallback: int = 100):
        self.scale = scale
        self.fallback = fallback
        self.prompts = []
        self.regenerations = []

    def _words_for(self, prompt_text):
        match = TARGET.search(prompt_text)
        target = int(match.group(1)) if match else self.fallback
        return max(1, int(target * self.scale))

    def generate(self, prompt_text):
        self.prompts.append(prompt_text)
        return make_text(self._words_for(prompt_text), offset=len(self.prompts))

    def regenerate(self, prompt_text, recommendations):
        self.regenerations.append((prompt_text, list(recommendations)))
        return make_text(self._words_for(prompt_text), offset=len(self.regenerations))


class FakeDetector:
    """Returns queued scans in order, repeating the last one."""

    def __init__(self, *scans):
        self.scans = list(scans)

    def scan(self, text):
        if len(self.scans) > 1:
            return self.scans.pop(0)
        return self.scans[0]


def clean_scan():
    return DetectionScan(originality_score=95, ai_likelihood_score=10, readability_grade=8, plagiarism_score=5)


def high_ai_scan():
    return DetectionScan(originality_score=90, ai_likelihood_score=95, readability_grade=8, plagiarism_score=5)


class TestPrompts:
    """Test chunk roles and carry-over context."""

    def test_chunk_roles(self):
        assert chunk_role(0, 0, 1000, 3000) == ChunkRole.OPENING
        assert chunk_role(1, 1000, 1000, 3000) == ChunkRole.BODY
        assert chunk_role(2, 2000, 1000, 3000) == ChunkRole.CLOSING

    def test_carryover(self):
        chunks = [
            "Energy markets shift quickly. Regional policy matters. Coastal growth continues.",
            "Energy policy guides regional growth. Markets respond slowly. Energy prices settle.",
        ]

        carryover = build_carryover(chunks, sentence_count=2, keyword_count=3)

        assert carryover.startswith(
            "Previous content ended with: Markets respond slowly. Energy prices settle."
        )
        assert carryover.endswith("Key themes established: energy, markets, regional")
        assert build_carryover([]) == ""


class TestChunkGenerator:
    """Test the per-chunk refinement loop."""

    def _brief(self, target=100):
        return ChunkBrief(
            prompt="Discuss river valley energy policy",
            chunk_target=target,
            chunk_index=0,
            total_target=target,
            style="Academic",
            tone="Formal"
        )

    def test_refinement_is_bounded(self):
        generator = FakeGenerator()
        chunker = ChunkGenerator(generator, QualityGate(FakeDetector(high_ai_scan())), max_refinement_cycles=2)

        result = chunker.produce(self._brief(), 0)

        assert result.refinement_cycles_used == 2
        assert len(generator.regenerations) == 2
        assert result.detection_result.severity == Severity.HIGH
        assert result.word_count == 100

    def test_refinement_stops_when_clean(self):
        generator = FakeGenerator()
        gate = QualityGate(FakeDetector(high_ai_scan(), clean_scan()))

        result = ChunkGenerator(generator, gate).produce(self._brief(), 0)

        assert result.refinement_cycles_used == 1
        prompt_text, recommendations = generator.regenerations[0]
        assert "Regenerated Content:" in prompt_text
        assert "Complete regeneration recommended due to high AI detection" in recommendations

    def test_medium_severity_targets_flagged_sections(self):
        generator = FakeGenerator()
        medium = DetectionScan(
            originality_score=90, ai_likelihood_score=75, readability_grade=8,
            plagiarism_score=5, flagged_sections=["It is important to note"]
        )

        ChunkGenerator(generator, QualityGate(FakeDetector(medium, clean_scan()))).produce(self._brief(), 0)

        prompt_text, _ = generator.regenerations[0]
        assert "1. It is important to note" in prompt_text
        assert "Refined Content:" in prompt_text

    def test_readability_only_simplifies(self):
        generator = FakeGenerator()
        dense = DetectionScan(originality_score=95, ai_likelihood_score=10, readability_grade=15, plagiarism_score=5)

        ChunkGenerator(generator, QualityGate(FakeDetector(dense, clean_scan()))).produce(self._brief(), 0)

        prompt_text, _ = generator.regenerations[0]
        assert "currently at reading grade 15.0" in prompt_text

    def test_zero_cycles_accepts_first_draft(self):
        generator = FakeGenerator()
        chunker = ChunkGenerator(generator, QualityGate(FakeDetector(high_ai_scan())), max_refinement_cycles=0)

        result = chunker.produce(self._brief(), 0)

        assert result.refinement_cycles_used == 0
        assert generator.regenerations == []

    def test_word_cap_trims_at_sentence_boundary(self):
        generator = FakeGenerator(scale=1.5)

        result = ChunkGenerator(generator, QualityGate()).produce(self._brief(100), 0, word_cap=95)

        assert result.word_count == 90
        assert result.content.endswith(".")

    def test_polish_uses_base_section(self):
        generator = FakeGenerator()

        result = ChunkGenerator(generator, QualityGate()).produce(self._brief(), 0, base_section="Old text here.")

        assert result.used_base_content
        assert generator.prompts[0].startswith("Polish and adapt")
        assert "Old text here." in generator.prompts[0]

    def test_empty_output_is_a_failure(self):
        class SilentGenerator(FakeGenerator):
            def generate(self, prompt_text):
                return "   "

        with pytest.raises(GenerationFailure) as excinfo:
            ChunkGenerator(SilentGenerator(), QualityGate()).produce(self._brief(), 0)
        assert excinfo.value.chunk_index == 0

    def test_generator_errors_are_wrapped(self):
        class BrokenGenerator(FakeGenerator):
            def generate(self, prompt_text):
                raise RuntimeError("connection reset")

        with pytest.raises(GenerationFailure, match="connection reset"):
            ChunkGenerator(BrokenGenerator(), QualityGate()).produce(self._brief(), 0)


class TestGenerationRequest:

    def test_validation(self):
        with pytest.raises(InvalidAmount):
            GenerationRequest(prompt="Essay", requested_word_count=0)
        with pytest.raises(ValueError, match="prompt"):
            GenerationRequest(prompt="  ", requested_word_count=100)
        with pytest.raises(ValueError, match="depth"):
            GenerationRequest(prompt="Essay", requested_word_count=100, depth=0)


class TestGenerationPipeline:
    """Test the chunk loop end to end."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _request(self, words=2500, plan="freemium", **kwargs):
        return GenerationRequest(
            prompt="Discuss river valley energy policy",
            requested_word_count=words,
            plan_tier=plan,
            **kwargs
        )

    def test_chunks_follow_plan_limit(self):
        generator = FakeGenerator()
        pipeline = GenerationPipeline(generator, QualityGate())

        result = pipeline.run("alice", self._request(2500))

        assert result.chunks_generated == 3
        assert result.word_count == 2500
        targets = [int(TARGET.search(p).group(1)) for p in generator.prompts]
        assert targets == [1000, 1000, 500]
        assert result.content.count("\n\n") == 2

    def test_pro_plan_uses_larger_chunks(self):
        generator = FakeGenerator()

        result = GenerationPipeline(generator, QualityGate()).run("alice", self._request(2500, plan="pro"))

        assert result.chunks_generated == 2

    def test_short_chunks_keep_the_loop_going(self):
        generator = FakeGenerator(scale=0.5)

        result = GenerationPipeline(generator, QualityGate()).run("alice", self._request(1000))

        assert result.word_count >= 1000
        assert result.chunks_generated > 1

    def test_overshoot_stays_below_one_chunk(self):
        class VerboseGenerator(FakeGenerator):
            def generate(self, prompt_text):
                self.prompts.append(prompt_text)
                return make_text(2500, offset=len(self.prompts))

        result = GenerationPipeline(VerboseGenerator(), QualityGate()).run("alice", self._request(1500))

        chunk_limit = 1000
        chunk_sizes = [len(chunk.split()) for chunk in result.content.split("\n\n")]
        assert all(size <= chunk_limit for size in chunk_sizes)
        assert result.chunks_generated == 2
        assert 0 <= result.word_count - 1500 < chunk_limit

    def test_small_overshoot_is_kept(self):
        result = GenerationPipeline(FakeGenerator(scale=1.2), QualityGate()).run("alice", self._request(500))

        assert result.chunks_generated == 1
        assert result.word_count == 600

    def test_chunk_roles_and_carryover(self):
        generator = FakeGenerator()

        GenerationPipeline(generator, QualityGate()).run("alice", self._request(3000))

        first, middle, last = generator.prompts
        assert "introduction and opening section" in first
        assert "Context from previous sections" not in first
        assert "main body section" in middle
        assert "Previous content ended with:" in middle
        assert "conclusion and closing section" in last

    def test_refinement_totals(self):
        generator = FakeGenerator()
        config = LedgerConfig(generation=GenerationConfig(max_refinement_cycles=1))
        pipeline = GenerationPipeline(generator, QualityGate(FakeDetector(high_ai_scan())), config)

        result = pipeline.run("alice", self._request(2000))

        assert result.chunks_generated == 2
        assert result.refinement_cycles == 2
        assert result.detection_summary.severity == Severity.HIGH

    def test_cancellation_between_chunks(self):
        token = CancellationToken()

        class CancellingGenerator(FakeGenerator):
            def generate(self, prompt_text):
                token.cancel()
                return super().generate(prompt_text)

        with pytest.raises(GenerationCancelled) as excinfo:
            GenerationPipeline(CancellingGenerator(), QualityGate()).run("alice", self._request(2500), token)
        assert excinfo.value.chunks_completed == 1

    def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        generator = FakeGenerator()

        with pytest.raises(GenerationCancelled):
            GenerationPipeline(generator, QualityGate()).run("alice", self._request(500), token)
        assert generator.prompts == []

    def test_citations_applied(self):
        class Formatter:
            def format(self, text, style):
                return CitationResult(
                    processed_text=text + " (Smith, 2020)",
                    bibliography=[{"author": "Smith", "year": "2020"}],
                    in_text_citations=["(Smith, 2020)"]
                )

        pipeline = GenerationPipeline(FakeGenerator(), QualityGate(), citations=Formatter())

        result = pipeline.run("alice", self._request(500, requires_citations=True))

        assert result.content.endswith("(Smith, 2020)")
        assert result.word_count == 502
        assert result.citations.in_text_citations == ["(Smith, 2020)"]

    def test_citation_failure(self):
        class Formatter:
            def format(self, text, style):
                raise RuntimeError("style not supported")

        pipeline = GenerationPipeline(FakeGenerator(), QualityGate(), citations=Formatter())

        with pytest.raises(GenerationFailure, match="citation formatting failed"):
            pipeline.run("alice", self._request(500, requires_citations=True))

    def test_similar_content_is_polished(self):
        cache = SimilarityCache(ContentRepository(self.db_path))
        request = self._request(2000)
        cache.store("bob", request.prompt, make_text(2000), "Academic", "Formal")
        generator = FakeGenerator()

        result = GenerationPipeline(generator, QualityGate(), similarity=cache).run("alice", request)

        assert result.used_similar_content
        assert all(p.startswith("Polish and adapt") for p in generator.prompts)
        assert result.content_id is not None

    def test_fresh_content_is_stored(self):
        cache = SimilarityCache(ContentRepository(self.db_path))

        result = GenerationPipeline(FakeGenerator(), QualityGate(), similarity=cache).run(
            "alice", self._request(500)
        )

        assert not result.used_similar_content
        stored = ContentRepository(self.db_path).get(result.content_id)
        assert stored.word_count == 500
        assert stored.metadata["chunks_generated"] == 1
