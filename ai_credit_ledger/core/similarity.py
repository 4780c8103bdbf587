"""
Similarity cache over previously generated content.

Scores stored content against a new request and hands back the best
matches, split into sections the chunk loop can polish instead of
generating from scratch. The cache is an optimization: store errors are
logged and reported as "no match".
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ai_credit_ledger.config.loader import GenerationConfig
from ai_credit_ledger.storage.models import StoredContent
from ai_credit_ledger.storage.repository import ContentRepository

from .text_metrics import count_words, extract_keywords, jaccard_similarity, normalize_words, split_sentences

logger = logging.getLogger(__name__)

PROMPT_WEIGHT = 0.4
KEYWORD_WEIGHT = 0.3
STYLE_TONE_WEIGHT = 0.2
WORD_COUNT_WEIGHT = 0.1


@dataclass(frozen=True)
class SimilarityMatch:
    content_id: str
    similarity_score: float
    prompt_similarity: float
    keyword_similarity: float
    style_tone_match: float
    word_count_similarity: float
    content: str
    word_count: int
    sections: List[str] = field(default_factory=list)


def chunk_targets(total_words: int, chunk_limit: int) -> List[int]:
    """Word targets of the chunks a request of total_words is generated in."""
    if chunk_limit <= 0:
        raise ValueError("chunk_limit must be > 0")
    targets = []
    remaining = total_words
    while remaining > 0:
        target = min(chunk_limit, remaining)
        targets.append(target)
        remaining -= target
    return targets


def split_into_sections(content: str, targets: List[int]) -> List[str]:
    """Split content at sentence boundaries in proportion to chunk targets.

    Each section takes whole sentences until it reaches its share of the
    content's words; the last section takes whatever remains.
    """
    if not targets:
        return []
    sentences = split_sentences(content)
    if not sentences:
        return []
    if len(targets) == 1:
        return [" ".join(sentences)]

    total_target = sum(targets)
    total_words = count_words(content)
    sections: List[str] = []
    cursor = 0
    for target in targets[:-1]:
        share = total_words * target / total_target
        taken: List[str] = []
        words = 0
        while cursor < len(sentences) and words < share:
            taken.append(sentences[cursor])
            words += count_words(sentences[cursor])
            cursor += 1
        sections.append(" ".join(taken))
    sections.append(" ".join(sentences[cursor:]))
    return sections


def style_tone_match(style: str, tone: str, stored_style: str, stored_tone: str) -> float:
    """1.0 when both style and tone match (case-insensitive), 0.5 for one."""
    style_match = 1 if (stored_style or "").lower() == (style or "").lower() else 0
    tone_match = 1 if (stored_tone or "").lower() == (tone or "").lower() else 0
    return (style_match + tone_match) / 2


def word_count_similarity(target: int, actual: int) -> float:
    if target <= 0 or actual <= 0:
        return 0.0
    return min(target, actual) / max(target, actual)


class SimilarityCache:
    """Finds and stores reusable content.

    Args:
        repository: Content store
        config: Threshold and result limits
        clock: Callable returning the current time
    """

    def __init__(
        self,
        repository: ContentRepository,
        config: Optional[GenerationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.config = config or GenerationConfig()
        self._clock = clock or datetime.now

    def score(self, prompt: str, style: str, tone: str, target_length: int,
              candidate: StoredContent) -> SimilarityMatch:
        """Weighted similarity of a stored item to a new request."""
        prompt_sim = jaccard_similarity(normalize_words(prompt), normalize_words(candidate.prompt))
        keyword_sim = jaccard_similarity(extract_keywords(prompt), candidate.keywords)
        style_sim = style_tone_match(style, tone, candidate.style, candidate.tone)
        length_sim = word_count_similarity(target_length, candidate.word_count)
        overall = (
            prompt_sim * PROMPT_WEIGHT
            + keyword_sim * KEYWORD_WEIGHT
            + style_sim * STYLE_TONE_WEIGHT
            + length_sim * WORD_COUNT_WEIGHT
        )
        return SimilarityMatch(
            content_id=candidate.content_id,
            similarity_score=round(overall, 4),
            prompt_similarity=prompt_sim,
            keyword_similarity=keyword_sim,
            style_tone_match=style_sim,
            word_count_similarity=length_sim,
            content=candidate.content,
            word_count=candidate.word_count
        )

    def find_similar(self, prompt: str, style: str, tone: str, target_length: int) -> List[SimilarityMatch]:
        """Get stored content at or above the similarity threshold.

        Returns:
            Matches sorted by descending similarity, at most
            max_similarity_results of them
        """
        keywords = extract_keywords(prompt)
        try:
            candidates = self.repository.find_candidates(keywords)
            matches = [
                match for match in (
                    self.score(prompt, style, tone, target_length, c) for c in candidates
                )
                if match.similarity_score >= self.config.similarity_threshold
            ]
            matches.sort(key=lambda m: m.similarity_score, reverse=True)
            matches = matches[:self.config.max_similarity_results]
            if matches:
                self.repository.touch([m.content_id for m in matches], self._clock())
        except sqlite3.Error as e:
            logger.warning("Similarity lookup failed, generating fresh content: %s", e)
            return []

        logger.debug(
            "Found %d similar item(s) above %.0f%% for keywords %s",
            len(matches), self.config.similarity_threshold * 100, keywords
        )
        return matches

    def get_sections(self, content_id: str, target_length: int, chunk_limit: int) -> List[str]:
        """Split stored content into sections aligned with the chunk plan."""
        try:
            stored = self.repository.get(content_id)
        except sqlite3.Error as e:
            logger.warning("Could not load content %s for polishing: %s", content_id, e)
            return []
        if stored is None:
            return []
        return split_into_sections(stored.content, chunk_targets(target_length, chunk_limit))

    def store(
        self,
        user_id: str,
        prompt: str,
        content: str,
        style: str,
        tone: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """Persist generated content for later reuse.

        Returns:
            The new content id, or None when the store rejected the write
        """
        now = self._clock()
        item = StoredContent(
            content_id=f"cnt_{uuid.uuid4().hex}",
            user_id=user_id,
            prompt=prompt.lower().strip(),
            content=content,
            keywords=extract_keywords(prompt),
            word_count=count_words(content),
            style=style,
            tone=tone,
            created_at=now,
            last_accessed=now,
            metadata=dict(metadata or {})
        )
        try:
            self.repository.insert(item)
        except sqlite3.Error as e:
            logger.warning("Could not store generated content for %s: %s", user_id, e)
            return None
        logger.info("Stored content %s (%d words)", item.content_id, item.word_count)
        return item.content_id

    def deactivate_stale(self, days_old: int = 90) -> int:
        """Retire content not accessed in days_old days and reused at most once."""
        count = self.repository.deactivate_stale(self._clock(), days_old)
        if count:
            logger.info("Deactivated %d stale content item(s)", count)
        return count
