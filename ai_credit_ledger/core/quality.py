"""
Quality gate.

Turns detector scores into a refinement decision for each chunk, and
aggregates chunk and whole-text scans into a request-level summary.
The gate never fails a request: a detector outage yields an accept-as-is
result flagged with detection_failed.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from ai_credit_ledger.config.loader import QualityThresholds

from .collaborators import ContentDetector, DetectionScan
from .text_metrics import count_words, flesch_kincaid_grade

logger = logging.getLogger(__name__)

FULL_LENGTH_WORDS = 500
ACCEPTABLE_AI = 70
ACCEPTABLE_PLAGIARISM = 20
ACCEPTABLE_ORIGINALITY = 70
REVIEW_AI = 80
REVIEW_PLAGIARISM = 25
REVIEW_ORIGINALITY = 60


class Severity(Enum):
    NONE = "none"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class DetectionResult:
    """Gate verdict for one piece of text."""
    originality_score: float
    plagiarism_score: float
    ai_likelihood_score: float
    readability_grade: float
    severity: Severity
    needs_refinement: bool
    recommendations: List[str] = field(default_factory=list)
    flagged_sections: List[str] = field(default_factory=list)
    detection_failed: bool = False
    readability_only: bool = False


@dataclass(frozen=True)
class DetectionSummary:
    """Request-level quality assessment of the assembled text."""
    originality_score: float
    ai_detection_score: float
    plagiarism_score: float
    readability_grade: float
    severity: Severity
    quality_score: int
    confidence: int
    is_acceptable: bool
    requires_review: bool
    problematic_chunks: int
    full_scan_succeeded: bool


def quality_score(originality: float, ai_score: float, plagiarism: float, word_count: int) -> int:
    """0-100 score weighting originality, human-likeness, plagiarism and length."""
    score = originality * 0.4 + (100 - ai_score) * 0.3 + (100 - plagiarism) * 0.2
    score += 10 if word_count >= FULL_LENGTH_WORDS else word_count / FULL_LENGTH_WORDS * 10
    return max(0, min(100, round(score)))


def is_acceptable(originality: float, ai_score: float, plagiarism: float) -> bool:
    return (
        ai_score <= ACCEPTABLE_AI
        and plagiarism <= ACCEPTABLE_PLAGIARISM
        and originality >= ACCEPTABLE_ORIGINALITY
    )


def requires_review(originality: float, ai_score: float, plagiarism: float) -> bool:
    return ai_score > REVIEW_AI or plagiarism > REVIEW_PLAGIARISM or originality < REVIEW_ORIGINALITY


class QualityGate:
    """Classifies detector output against configurable thresholds.

    Args:
        detector: Content detector collaborator; without one every scan
            reports detection_failed
        thresholds: Severity thresholds
    """

    def __init__(self, detector: Optional[ContentDetector] = None, thresholds: Optional[QualityThresholds] = None):
        self.detector = detector
        self.thresholds = thresholds or QualityThresholds()

    def _scan(self, text: str) -> Optional[DetectionScan]:
        if self.detector is None:
            return None
        try:
            return self.detector.scan(text)
        except Exception as e:  # outages degrade to accept-as-is
            logger.warning("Content detection failed, accepting text as-is: %s", e)
            return None

    def evaluate(self, text: str) -> DetectionResult:
        """Scan text and decide whether it needs refinement.

        plagiarism > medium or AI > medium flags medium severity; either
        past its high threshold, or both medium triggers at once, flags
        high. A readability grade above the limit flags medium with
        simplification advice.
        """
        scan = self._scan(text)
        if scan is None:
            return DetectionResult(
                originality_score=100.0,
                plagiarism_score=0.0,
                ai_likelihood_score=0.0,
                readability_grade=flesch_kincaid_grade(text),
                severity=Severity.NONE,
                needs_refinement=False,
                recommendations=["Detection unavailable; content accepted without scoring"],
                detection_failed=True
            )

        t = self.thresholds
        plagiarism = scan.effective_plagiarism
        ai_score = scan.ai_likelihood_score
        grade = scan.readability_grade
        if grade is None:
            grade = flesch_kincaid_grade(text)

        plagiarism_medium = plagiarism > t.plagiarism_medium
        ai_medium = ai_score > t.ai_medium
        hard_to_read = grade > t.readability_grade
        high = (
            plagiarism > t.plagiarism_high
            or ai_score > t.ai_high
            or (plagiarism_medium and ai_medium)
        )

        if high:
            severity = Severity.HIGH
        elif plagiarism_medium or ai_medium or hard_to_read:
            severity = Severity.MEDIUM
        else:
            severity = Severity.NONE

        recommendations: List[str] = []
        if ai_score > t.ai_high:
            recommendations.extend([
                "Complete regeneration recommended due to high AI detection",
                "Use more varied sentence structures and vocabulary",
                "Avoid formulaic transitions and conclusions",
            ])
        elif ai_medium:
            recommendations.extend([
                "Rephrase repetitive or formulaic language",
                "Add more specific examples and insights",
            ])
        if plagiarism > t.plagiarism_high:
            recommendations.extend([
                "Significant rewriting required due to plagiarism detection",
                "Add proper citations if using referenced material",
            ])
        elif plagiarism_medium:
            recommendations.append("Paraphrase flagged sections with original language")
        if hard_to_read:
            recommendations.extend([
                f"Simplify language: reading grade {grade:.1f} exceeds {t.readability_grade:g}",
                "Break long sentences into shorter ones",
            ])

        result = DetectionResult(
            originality_score=scan.originality_score,
            plagiarism_score=plagiarism,
            ai_likelihood_score=ai_score,
            readability_grade=grade,
            severity=severity,
            needs_refinement=severity != Severity.NONE,
            recommendations=recommendations,
            flagged_sections=list(scan.flagged_sections),
            readability_only=hard_to_read and not (plagiarism_medium or ai_medium or high)
        )
        logger.debug(
            "Detection: ai=%.0f plagiarism=%.0f grade=%.1f severity=%s",
            ai_score, plagiarism, grade, severity.value
        )
        return result

    def summarize(self, text: str, chunk_results: Sequence[DetectionResult]) -> DetectionSummary:
        """Combine a scan of the whole text with per-chunk results.

        The whole-text scan is preferred; chunk averages stand in when it
        fails. Text that nothing managed to score is never acceptable and
        always goes to manual review.
        """
        scored = [r for r in chunk_results if not r.detection_failed]
        if scored:
            avg_originality = sum(r.originality_score for r in scored) / len(scored)
            avg_ai = sum(r.ai_likelihood_score for r in scored) / len(scored)
            avg_plagiarism = sum(r.plagiarism_score for r in scored) / len(scored)
        else:
            avg_originality, avg_ai, avg_plagiarism = 100.0, 0.0, 0.0
        problematic = sum(1 for r in scored if r.severity != Severity.NONE)

        full = self._scan(text)
        if full is not None:
            originality = full.originality_score
            ai_score = full.ai_likelihood_score
            plagiarism = full.effective_plagiarism
            grade = full.readability_grade
        else:
            originality, ai_score, plagiarism = avg_originality, avg_ai, avg_plagiarism
            grade = None
        if grade is None:
            grade = flesch_kincaid_grade(text)

        confidence = 50.0
        if full is not None:
            confidence += 30
        if chunk_results:
            confidence += len(scored) / len(chunk_results) * 20
        if full is not None and scored and abs(ai_score - avg_ai) > 20:
            confidence -= 15
        unscored = full is None and not scored
        if unscored:
            confidence = 30.0

        t = self.thresholds
        if plagiarism > t.plagiarism_high or ai_score > t.ai_high or (
                plagiarism > t.plagiarism_medium and ai_score > t.ai_medium):
            severity = Severity.HIGH
        elif plagiarism > t.plagiarism_medium or ai_score > t.ai_medium:
            severity = Severity.MEDIUM
        else:
            severity = Severity.NONE

        return DetectionSummary(
            originality_score=round(originality, 1),
            ai_detection_score=round(ai_score, 1),
            plagiarism_score=round(plagiarism, 1),
            readability_grade=grade,
            severity=severity,
            quality_score=quality_score(originality, ai_score, plagiarism, count_words(text)),
            confidence=max(0, min(100, round(confidence))),
            is_acceptable=not unscored and is_acceptable(originality, ai_score, plagiarism),
            requires_review=unscored or requires_review(originality, ai_score, plagiarism),
            problematic_chunks=problematic,
            full_scan_succeeded=full is not None
        )
