"""
Chunked, quality-gated generation pipeline.

Builds a long document chunk by chunk, each chunk sized by the caller's
plan, carrying context forward so the pieces read as one text. Stored
content similar enough to the request is polished instead of generated
from scratch.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ai_credit_ledger.config.loader import LedgerConfig, default_config

from .chunking import ChunkGenerator, ChunkResult, build_carryover
from .collaborators import CitationFormatter, CitationResult, TextGenerator
from .errors import GenerationCancelled, GenerationFailure, InvalidAmount
from .pricing import Tool
from .prompts import ChunkBrief
from .quality import DetectionResult, DetectionSummary, QualityGate
from .similarity import SimilarityCache
from .text_metrics import count_words

logger = logging.getLogger(__name__)

CHUNK_SEPARATOR = "\n\n"


class PipelineState(Enum):
    RESERVING_FUNDS = "reserving_funds"
    GENERATING = "generating"
    RECONCILING = "reconciling"
    COMPLETE = "complete"
    FAILED_REFUNDED = "failed_refunded"


class CancellationToken:
    """Thread-safe cancellation flag, honoured between chunks."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class GenerationRequest:
    """A caller's generation request."""
    prompt: str
    requested_word_count: int
    style: str = "Academic"
    tone: str = "Formal"
    plan_tier: str = "freemium"
    quality_tier: str = "standard"
    requires_citations: bool = False
    citation_style: str = "apa"
    tool: Tool = Tool.WRITING
    subject: str = ""
    additional_instructions: str = ""
    depth: Optional[int] = None

    def __post_init__(self):
        if not self.prompt or not self.prompt.strip():
            raise ValueError("prompt cannot be empty")
        if self.requested_word_count is None or self.requested_word_count <= 0:
            raise InvalidAmount(f"requested word count must be positive: {self.requested_word_count}")
        if self.depth is not None and self.depth <= 0:
            raise ValueError("depth must be > 0")


@dataclass
class GenerationState:
    """Mutable progress of one request's chunk loop."""
    chunks: List[str] = field(default_factory=list)
    total_words_generated: int = 0
    chunks_generated: int = 0
    refinement_cycles_used: int = 0
    context_carryover: str = ""
    detection_results: List[DetectionResult] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    def accept(self, chunk: ChunkResult) -> None:
        self.chunks.append(chunk.content)
        self.total_words_generated += chunk.word_count
        self.chunks_generated += 1
        self.refinement_cycles_used += chunk.refinement_cycles_used
        self.detection_results.append(chunk.detection_result)


@dataclass(frozen=True)
class PipelineResult:
    content: str
    word_count: int
    chunks_generated: int
    refinement_cycles: int
    detection_summary: DetectionSummary
    used_similar_content: bool
    generation_time: float
    content_id: Optional[str] = None
    citations: Optional[CitationResult] = None


class GenerationPipeline:
    """Runs the chunk loop for one request at a time.

    Args:
        generator: Text generation collaborator
        gate: Quality gate used per chunk and for the final summary
        config: Plans and generation settings
        similarity: Optional similarity cache for content reuse
        citations: Optional citation formatter
    """

    def __init__(
        self,
        generator: TextGenerator,
        gate: QualityGate,
        config: Optional[LedgerConfig] = None,
        similarity: Optional[SimilarityCache] = None,
        citations: Optional[CitationFormatter] = None
    ):
        self.config = config or default_config()
        self.gate = gate
        self.similarity = similarity
        self.citations = citations
        self.chunker = ChunkGenerator(
            generator,
            gate,
            max_refinement_cycles=self.config.generation.max_refinement_cycles,
            closing_fraction=self.config.generation.closing_fraction
        )

    def _base_sections(self, request: GenerationRequest, chunk_limit: int) -> List[str]:
        if self.similarity is None:
            return []
        matches = self.similarity.find_similar(
            request.prompt, request.style, request.tone, request.requested_word_count
        )
        if not matches:
            return []
        best = matches[0]
        logger.info(
            "Reusing content %s (similarity %.2f) as base", best.content_id, best.similarity_score
        )
        return self.similarity.get_sections(best.content_id, request.requested_word_count, chunk_limit)

    def run(
        self,
        user_id: str,
        request: GenerationRequest,
        cancel_token: Optional[CancellationToken] = None
    ) -> PipelineResult:
        """Generate the full text for a request.

        Raises:
            GenerationFailure: If a chunk cannot be produced
            GenerationCancelled: If the token is cancelled between chunks
        """
        generation = self.config.generation
        chunk_limit = self.config.get_plan(request.plan_tier).chunk_limit
        state = GenerationState()
        sections = self._base_sections(request, chunk_limit)

        while state.total_words_generated < request.requested_word_count:
            if cancel_token is not None and cancel_token.is_cancelled:
                logger.info("Generation for %s cancelled after %d chunk(s)", user_id, state.chunks_generated)
                raise GenerationCancelled(state.chunks_generated)

            remaining = request.requested_word_count - state.total_words_generated
            brief = ChunkBrief(
                prompt=request.prompt,
                chunk_target=min(chunk_limit, remaining),
                chunk_index=state.chunks_generated,
                total_target=request.requested_word_count,
                style=request.style,
                tone=request.tone,
                context=state.context_carryover,
                subject=request.subject,
                additional_instructions=request.additional_instructions
            )
            base = sections[brief.chunk_index] if brief.chunk_index < len(sections) else None
            chunk = self.chunker.produce(brief, state.total_words_generated, base, word_cap=chunk_limit)
            state.accept(chunk)
            state.context_carryover = build_carryover(
                state.chunks, generation.context_sentences, generation.context_keywords
            )
            logger.info(
                "Chunk %d complete: %d words, %d refinement(s)",
                chunk.chunk_index + 1, chunk.word_count, chunk.refinement_cycles_used
            )

        content = CHUNK_SEPARATOR.join(state.chunks)

        citation_result = None
        if request.requires_citations:
            if self.citations is None:
                logger.warning("Citations requested but no formatter configured; skipping")
            else:
                try:
                    citation_result = self.citations.format(content, request.citation_style)
                except Exception as e:
                    raise GenerationFailure(f"citation formatting failed: {e}") from e
                content = citation_result.processed_text

        summary = self.gate.summarize(content, state.detection_results)
        word_count = count_words(content)
        elapsed = time.monotonic() - state.started_at
        used_similar = bool(sections)

        content_id = None
        if self.similarity is not None:
            metadata: Dict[str, Any] = {
                "subject": request.subject,
                "plan_tier": request.plan_tier,
                "requested_word_count": request.requested_word_count,
                "actual_word_count": word_count,
                "chunks_generated": state.chunks_generated,
                "refinement_cycles": state.refinement_cycles_used,
                "generation_time": round(elapsed, 3),
                "used_similar_content": used_similar,
                "originality_score": summary.originality_score,
                "ai_detection_score": summary.ai_detection_score,
                "plagiarism_score": summary.plagiarism_score,
                "quality_score": summary.quality_score,
            }
            content_id = self.similarity.store(
                user_id, request.prompt, content, request.style, request.tone, metadata
            )

        logger.info(
            "Generated %d words in %d chunk(s) for %s (%.1fs)",
            word_count, state.chunks_generated, user_id, elapsed
        )
        return PipelineResult(
            content=content,
            word_count=word_count,
            chunks_generated=state.chunks_generated,
            refinement_cycles=state.refinement_cycles_used,
            detection_summary=summary,
            used_similar_content=used_similar,
            generation_time=elapsed,
            content_id=content_id,
            citations=citation_result
        )
