"""
Contracts for the external services the pipeline drives.

Adapters in ai_credit_ledger.sdk implement these against real APIs; tests
use in-memory fakes.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol


@dataclass(frozen=True)
class DetectionScan:
    """Raw scores reported by a content detector (0-100 scales)."""
    originality_score: float
    ai_likelihood_score: float
    readability_grade: Optional[float] = None
    plagiarism_score: Optional[float] = None
    flagged_sections: List[str] = field(default_factory=list)

    @property
    def effective_plagiarism(self) -> float:
        """Plagiarism score, derived from originality when not reported."""
        if self.plagiarism_score is not None:
            return self.plagiarism_score
        return max(0.0, 100.0 - self.originality_score)


@dataclass(frozen=True)
class CitationResult:
    processed_text: str
    bibliography: List[Dict[str, str]] = field(default_factory=list)
    in_text_citations: List[str] = field(default_factory=list)


class TextGenerator(Protocol):
    def generate(self, prompt_text: str) -> str:
        ...

    def regenerate(self, prompt_text: str, recommendations: List[str]) -> str:
        ...


class ContentDetector(Protocol):
    def scan(self, text: str) -> DetectionScan:
        ...


class CitationFormatter(Protocol):
    def format(self, text: str, style: str) -> CitationResult:
        ...
