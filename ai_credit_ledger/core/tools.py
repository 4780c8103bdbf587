"""
Single-shot metered tools: paid content detection and prompt optimization.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from .collaborators import TextGenerator
from .errors import GenerationFailure, InvalidAmount
from .ledger import CreditLedger
from .pricing import Operation, Tool, prompt_credits
from .quality import DetectionResult, QualityGate
from .reconciliation import Reconciliation, Settlement
from .text_metrics import WordUsage, count_words

logger = logging.getLogger(__name__)

MAX_PROMPT_WORDS = 15000


@dataclass(frozen=True)
class DetectorReport:
    detection: DetectionResult
    word_count: int
    credits_charged: int
    transaction_id: str
    refunded: bool = False


@dataclass(frozen=True)
class OptimizedPrompt:
    text: str
    usage: WordUsage
    credits_used: int
    reconciliation: Reconciliation
    transaction_ids: List[str] = field(default_factory=list)
    unsettled_credits: int = 0


class MeteredDetector:
    """Charges for a detection scan and returns the gate's verdict.

    A scan the detector could not complete is rolled back, so the user
    only pays for results.
    """

    def __init__(self, ledger: CreditLedger, gate: QualityGate):
        self.ledger = ledger
        self.gate = gate

    def scan(self, user_id: str, text: str, plan_tier: str) -> DetectorReport:
        words = count_words(text)
        charge = self.ledger.deduct(user_id, words, plan_tier, Tool.DETECTOR, Operation.DETECTION)
        try:
            detection = self.gate.evaluate(text)
        except Exception:
            self.ledger.rollback(user_id, charge.transaction_id)
            raise

        if detection.detection_failed:
            self.ledger.rollback(user_id, charge.transaction_id)
            logger.info("Detection for %s failed; %d credits returned", user_id, charge.credits_deducted)
            return DetectorReport(
                detection=detection,
                word_count=words,
                credits_charged=0,
                transaction_id=charge.transaction_id,
                refunded=True
            )
        return DetectorReport(
            detection=detection,
            word_count=words,
            credits_charged=charge.credits_deducted,
            transaction_id=charge.transaction_id
        )


def build_optimizer_prompt(prompt: str, category: str) -> str:
    return (
        f"Rewrite the following {category} prompt so a writing assistant can act on it "
        "without follow-up questions. Make the goal, audience, structure and length explicit, "
        "keep every constraint the author gave, and return only the improved prompt.\n\n"
        f"Prompt:\n{prompt}\n\n"
        "Improved Prompt:"
    )


class PromptOptimizer:
    """Rewrites prompts, charging input and output words separately.

    Output size is unknown up front: the call reserves against the
    caller's estimate and settles against the words actually returned.
    """

    def __init__(self, ledger: CreditLedger, generator: TextGenerator):
        self.ledger = ledger
        self.generator = generator

    def optimize(
        self,
        user_id: str,
        prompt: str,
        plan_tier: str,
        estimated_output_words: int,
        category: str = "general"
    ) -> OptimizedPrompt:
        """Optimize a prompt.

        Raises:
            InvalidAmount: If the prompt is empty or longer than MAX_PROMPT_WORDS
            InsufficientFunds: If the reservation cannot be covered
            GenerationFailure: If the generator fails (reservation rolled back)
        """
        input_words = count_words(prompt)
        if input_words == 0:
            raise InvalidAmount("prompt cannot be empty")
        if input_words > MAX_PROMPT_WORDS:
            raise InvalidAmount(f"prompt exceeds maximum length of {MAX_PROMPT_WORDS} words")
        if estimated_output_words <= 0:
            raise InvalidAmount(f"estimated output words must be positive: {estimated_output_words}")

        ratios = self.ledger.config.credit_ratios
        estimated = prompt_credits(WordUsage(input_words, estimated_output_words), ratios)
        reservation = self.ledger.charge(user_id, estimated, 0, plan_tier, Tool.PROMPT)
        settlement = Settlement(self.ledger, user_id, plan_tier, Tool.PROMPT, reservation)

        try:
            try:
                text = (self.generator.generate(build_optimizer_prompt(prompt, category)) or "").strip()
            except GenerationFailure:
                raise
            except Exception as e:
                raise GenerationFailure(f"prompt optimization failed: {e}") from e
            if not text:
                raise GenerationFailure("prompt optimization returned no text")

            usage = WordUsage(input_words, count_words(text))
            reconciliation = Reconciliation(estimated, prompt_credits(usage, ratios))
            unsettled = settlement.apply(reconciliation)
        except Exception:
            settlement.refund_on_failure()
            raise

        return OptimizedPrompt(
            text=text,
            usage=usage,
            credits_used=reconciliation.actual_credits - unsettled,
            reconciliation=reconciliation,
            transaction_ids=list(settlement.transaction_ids),
            unsettled_credits=unsettled
        )
