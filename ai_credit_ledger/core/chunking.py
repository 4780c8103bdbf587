"""
Single-chunk generation with a bounded refinement loop.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .collaborators import TextGenerator
from .errors import GenerationFailure
from .prompts import (
    ChunkBrief,
    build_chunk_prompt,
    build_polish_prompt,
    build_refinement_prompt,
    build_regeneration_prompt,
    build_simplification_prompt,
    chunk_role,
)
from .quality import DetectionResult, QualityGate, Severity
from .text_metrics import count_words, extract_keywords, last_sentences, trim_to_words

logger = logging.getLogger(__name__)

MAX_REFINEMENT_CYCLES = 2
DEFAULT_FLAGGED_SECTION = "Detected formulaic language"


@dataclass(frozen=True)
class ChunkResult:
    content: str
    word_count: int
    detection_result: DetectionResult
    refinement_cycles_used: int
    chunk_index: int
    used_base_content: bool = False


def build_carryover(chunks: List[str], sentence_count: int = 2, keyword_count: int = 5) -> str:
    """Context handed to the next chunk.

    The closing sentences of the latest chunk plus the most frequent
    content words (longer than four letters) across everything so far.
    """
    if not chunks:
        return ""
    tail = last_sentences(chunks[-1], sentence_count)
    themes = extract_keywords(" ".join(chunks), limit=keyword_count, min_length=5)
    return f"Previous content ended with: {tail}\n\nKey themes established: {', '.join(themes)}"


class ChunkGenerator:
    """Produces one accepted chunk.

    The refinement loop runs at most max_refinement_cycles passes; whatever
    text exists after the last pass is accepted.

    Args:
        generator: Text generation collaborator
        gate: Quality gate run after every pass
        max_refinement_cycles: Upper bound on refinement passes per chunk
        closing_fraction: Share of the target treated as the closing stretch
    """

    def __init__(
        self,
        generator: TextGenerator,
        gate: QualityGate,
        max_refinement_cycles: int = MAX_REFINEMENT_CYCLES,
        closing_fraction: float = 0.2
    ):
        self.generator = generator
        self.gate = gate
        self.max_refinement_cycles = max_refinement_cycles
        self.closing_fraction = closing_fraction

    def _call(self, func: Callable[..., str], chunk_index: int, *args) -> str:
        try:
            text = func(*args)
        except GenerationFailure as e:
            if e.chunk_index is None:
                e.chunk_index = chunk_index
            raise
        except Exception as e:
            raise GenerationFailure(f"chunk {chunk_index}: {e}", chunk_index) from e
        return (text or "").strip()

    def produce(
        self,
        brief: ChunkBrief,
        words_before: int,
        base_section: Optional[str] = None,
        word_cap: Optional[int] = None
    ) -> ChunkResult:
        """Generate (or polish) a chunk, then refine it while the gate asks for it.

        The accepted text is trimmed to word_cap words when one is given.

        Raises:
            GenerationFailure: If the generator fails or returns no words
        """
        index = brief.chunk_index
        if base_section:
            logger.debug("Polishing stored section for chunk %d", index)
            text = self._call(self.generator.generate, index, build_polish_prompt(brief, base_section))
        else:
            role = chunk_role(index, words_before, brief.chunk_target, brief.total_target, self.closing_fraction)
            logger.debug("Generating chunk %d as %s", index, role.name.lower())
            text = self._call(self.generator.generate, index, build_chunk_prompt(brief, role))

        detection = self.gate.evaluate(text)
        cycles = 0
        while detection.needs_refinement and cycles < self.max_refinement_cycles:
            cycles += 1
            if detection.severity == Severity.HIGH:
                prompt_text = build_regeneration_prompt(brief)
            elif detection.readability_only:
                prompt_text = build_simplification_prompt(brief, text, detection.readability_grade)
            else:
                sections = detection.flagged_sections or [DEFAULT_FLAGGED_SECTION]
                prompt_text = build_refinement_prompt(brief, text, sections)
            text = self._call(self.generator.regenerate, index, prompt_text, detection.recommendations)
            detection = self.gate.evaluate(text)
            logger.info(
                "Refinement cycle %d for chunk %d: severity now %s",
                cycles, index, detection.severity.value
            )

        word_count = count_words(text)
        if word_cap is not None and word_count > word_cap:
            logger.debug("Trimming chunk %d from %d to %d words", index, word_count, word_cap)
            text = trim_to_words(text, word_cap)
            word_count = count_words(text)
        if word_count == 0:
            raise GenerationFailure(f"chunk {index}: generator returned no words", index)

        return ChunkResult(
            content=text,
            word_count=word_count,
            detection_result=detection,
            refinement_cycles_used=cycles,
            chunk_index=index,
            used_base_content=bool(base_section)
        )
