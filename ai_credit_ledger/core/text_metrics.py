"""
Word counting and lightweight text analysis.

The pipeline measures generated output itself: collaborators never
guarantee an exact word count.
"""

import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, List, Set

STOP_WORDS: Set[str] = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "may", "might", "can", "this", "that", "these", "those",
    "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them", "my", "your",
    "his", "its", "our", "their", "about", "how", "what", "when", "where", "why", "which",
    "there", "these", "other", "while", "because", "through", "between", "within", "without",
    "however", "therefore", "also", "into", "from", "than", "then", "more", "most", "such",
}

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_END = re.compile(r"[.!?][\"')\]]*$")
_WORD = re.compile(r"\S+")
_NON_WORD = re.compile(r"[^a-z0-9\s]")
_VOWEL_GROUPS = re.compile(r"[aeiouy]+")


@dataclass(frozen=True)
class WordUsage:
    """Input and output word counts for a single metered call."""
    input_words: int
    output_words: int

    @property
    def total_words(self) -> int:
        """Total words processed (input + output)."""
        return self.input_words + self.output_words


def count_words(text: str) -> int:
    """Count whitespace-delimited words in text."""
    if not text:
        return 0
    return len(text.split())


def trim_to_words(text: str, limit: int) -> str:
    """Cut text to at most `limit` words.

    The cut falls after the last complete sentence that fits, as long as
    that keeps at least half of the limit; otherwise it falls mid-sentence.
    """
    words = list(_WORD.finditer(text))
    if len(words) <= limit:
        return text
    cut = words[limit - 1].end()
    for match in reversed(words[max(limit // 2, 1) - 1:limit]):
        if _SENTENCE_END.search(match.group()):
            cut = match.end()
            break
    return text[:cut]


def split_sentences(text: str) -> List[str]:
    """Split text into sentences on terminal punctuation."""
    if not text or not text.strip():
        return []
    return [s.strip() for s in _SENTENCE_SPLIT.split(text.strip()) if s.strip()]


def last_sentences(text: str, count: int = 2) -> str:
    """Return the last `count` sentences of text joined by a space."""
    sentences = split_sentences(text)
    return " ".join(sentences[-count:]) if sentences else ""


def normalize_words(text: str) -> List[str]:
    """Lowercase text, strip punctuation and split into words."""
    return _NON_WORD.sub(" ", text.lower()).split()


def extract_keywords(
    text: str,
    limit: int = 20,
    min_length: int = 3,
    stop_words: Iterable[str] = STOP_WORDS
) -> List[str]:
    """Return the most frequent content words in text.

    Args:
        text: Text to analyze
        limit: Maximum number of keywords to return
        min_length: Minimum word length (inclusive)
        stop_words: Words to exclude

    Returns:
        Keywords ordered by descending frequency, ties broken by first appearance
    """
    excluded = set(stop_words)
    words = [
        w for w in normalize_words(text)
        if len(w) >= min_length and w not in excluded
    ]
    # Counter.most_common keeps insertion order for equal counts
    return [word for word, _ in Counter(words).most_common(limit)]


def jaccard_similarity(left: Iterable[str], right: Iterable[str]) -> float:
    """Jaccard similarity of two collections treated as sets."""
    a, b = set(left), set(right)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def count_syllables(word: str) -> int:
    """Approximate syllable count using vowel groups."""
    word = word.lower()
    groups = _VOWEL_GROUPS.findall(word)
    count = len(groups)
    if word.endswith("e") and count > 1 and not word.endswith("le"):
        count -= 1
    return max(count, 1)


def flesch_kincaid_grade(text: str) -> float:
    """Flesch-Kincaid grade level of text.

    Returns 0.0 for empty text.
    """
    words = normalize_words(text)
    if not words:
        return 0.0
    sentence_count = max(len(split_sentences(text)), 1)
    syllables = sum(count_syllables(w) for w in words)
    grade = 0.39 * (len(words) / sentence_count) + 11.8 * (syllables / len(words)) - 15.59
    return round(max(grade, 0.0), 1)
