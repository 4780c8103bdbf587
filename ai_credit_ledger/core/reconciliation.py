"""
Estimate-then-settle credit reconciliation.

A request reserves credits for an estimated output, runs the pipeline,
then settles the difference against what was actually produced. Any
failure after the reservation rolls back every deduction the request
made before the error propagates.

Settlement policy: a top-up the ledger rejects never blocks delivery; the
shortfall is recorded as an unsettled charge and collected at the next
monthly refresh. A rejected refund is recorded as a negative unsettled
charge and credited the same way. Only when even the record fails is the
request rolled back with ReconciliationFailure.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal
from typing import Dict, List, Optional

from ai_credit_ledger.config.loader import PlanConfig

from .collaborators import CitationResult
from .errors import CreditLedgerError, InvalidAmount, ReconciliationFailure
from .ledger import CreditLedger, DeductionResult
from .pipeline import CancellationToken, GenerationPipeline, GenerationRequest, PipelineResult, PipelineState
from .pricing import Tool, required_credits
from .quality import DetectionSummary
from .text_metrics import count_words

logger = logging.getLogger(__name__)

RESEARCH_WORDS_PER_DEPTH = 1000
RESEARCH_MAX_WORDS = 8000


@dataclass(frozen=True)
class Reconciliation:
    """Estimated versus actual credits for one request."""
    estimated_credits: int
    actual_credits: int

    @property
    def delta(self) -> int:
        """Positive when the user owes more, negative when owed a refund."""
        return self.actual_credits - self.estimated_credits

    @property
    def is_exact(self) -> bool:
        return self.delta == 0


@dataclass(frozen=True)
class GenerationReceipt:
    content: str
    word_count: int
    credits_used: int
    chunks_generated: int
    refinement_cycles: int
    detection_summary: DetectionSummary
    reconciliation: Reconciliation
    transaction_ids: List[str] = field(default_factory=list)
    unsettled_credits: int = 0
    content_id: Optional[str] = None
    used_similar_content: bool = False
    citations: Optional[CitationResult] = None
    state: PipelineState = PipelineState.COMPLETE


def check_plan_limits(plan: PlanConfig, request: GenerationRequest) -> None:
    """Reject a request whose prompt or output size exceeds its plan's limits."""
    prompt_words = count_words(request.prompt)
    if plan.max_prompt_words is not None and prompt_words > plan.max_prompt_words:
        raise InvalidAmount(
            f"prompt of {prompt_words} words exceeds the {plan.name} limit of {plan.max_prompt_words}"
        )
    if plan.max_output_words is not None and request.requested_word_count > plan.max_output_words:
        raise InvalidAmount(
            f"{request.requested_word_count} words requested exceeds the {plan.name} limit "
            f"of {plan.max_output_words} per request"
        )


def estimate_output_words(request: GenerationRequest, quality_factors: Dict[str, float]) -> int:
    """Words to reserve credits for before generation starts.

    Research requests with a depth reserve depth x 1000 words (capped at
    8000); everything else reserves the requested count scaled by the
    quality tier's factor, rounded up.
    """
    if request.tool == Tool.RESEARCH and request.depth:
        return min(request.depth * RESEARCH_WORDS_PER_DEPTH, RESEARCH_MAX_WORDS)
    factor = quality_factors.get(request.quality_tier.lower(), 1.0)
    scaled = Decimal(request.requested_word_count) * Decimal(str(factor))
    return int(scaled.quantize(Decimal('1'), rounding=ROUND_UP))


class Settlement:
    """Ledger bookkeeping for one reserved request.

    Tracks every transaction the request creates so a failure can undo
    them all.

    Args:
        ledger: Credit ledger
        user_id: Account owner
        plan_tier: Caller's plan tier
        tool: Tool the credits are charged to
        reservation: The up-front deduction
    """

    def __init__(self, ledger: CreditLedger, user_id: str, plan_tier: str,
                 tool: Tool, reservation: DeductionResult):
        self.ledger = ledger
        self.user_id = user_id
        self.plan_tier = plan_tier
        self.tool = tool
        self.reservation = reservation
        self.deductions: List[str] = [reservation.transaction_id]
        self.transaction_ids: List[str] = [reservation.transaction_id]

    def apply(self, reconciliation: Reconciliation, word_delta: int = 0) -> int:
        """Apply the reconciliation delta.

        Args:
            reconciliation: Estimated versus actual credits
            word_delta: Actual minus estimated words, for usage counters

        Returns:
            Credits left unsettled (0 when fully applied)

        Raises:
            ReconciliationFailure: If the delta could neither be applied nor recorded
        """
        delta = reconciliation.delta
        reference = self.reservation.transaction_id
        if delta > 0:
            try:
                top_up = self.ledger.charge(
                    self.user_id, delta, max(word_delta, 0), self.plan_tier, self.tool,
                    reference_transaction_id=reference
                )
            except CreditLedgerError as e:
                logger.warning("Top-up of %d credits for %s failed: %s", delta, self.user_id, e)
                self._record_unsettled(delta, f"top-up failed: {e}")
                return delta
            self.deductions.append(top_up.transaction_id)
            self.transaction_ids.append(top_up.transaction_id)
        elif delta < 0:
            try:
                refund = self.ledger.refund(
                    self.user_id, -delta, reference, words_to_reverse=max(-word_delta, 0)
                )
            except CreditLedgerError as e:
                logger.warning("Refund of %d credits for %s failed: %s", -delta, self.user_id, e)
                self._record_unsettled(delta, f"refund failed: {e}")
                return delta
            self.transaction_ids.append(refund.transaction_id)
        return 0

    def _record_unsettled(self, credits: int, reason: str) -> None:
        try:
            self.ledger.record_unsettled(self.user_id, credits, self.reservation.transaction_id, reason)
        except (CreditLedgerError, sqlite3.Error) as e:
            raise ReconciliationFailure(
                f"could not settle or record {credits:+d} credits for {self.user_id}: {e}"
            ) from e

    def refund_on_failure(self) -> None:
        """Roll back the request's deductions, newest first.

        A rollback that fails is logged; the caller re-raises the original
        error either way.
        """
        for transaction_id in reversed(self.deductions):
            try:
                self.ledger.rollback(self.user_id, transaction_id)
            except (CreditLedgerError, sqlite3.Error) as e:
                logger.error("Could not roll back %s for %s: %s", transaction_id, self.user_id, e)


class CreditedGenerator:
    """Runs generation requests against a credit ledger.

    Args:
        ledger: Credit ledger holding the caller's account
        pipeline: Generation pipeline
    """

    def __init__(self, ledger: CreditLedger, pipeline: GenerationPipeline):
        self.ledger = ledger
        self.pipeline = pipeline

    def reserve_and_generate(
        self,
        user_id: str,
        request: GenerationRequest,
        cancel_token: Optional[CancellationToken] = None
    ) -> GenerationReceipt:
        """Reserve, generate and settle one request.

        Returns:
            GenerationReceipt with the content and the settled cost

        Raises:
            InvalidAmount: The request exceeds its plan's prompt or output limit
            InsufficientFunds, QuotaExceeded, AccountNotFound: Reservation
                rejected; nothing was generated
            GenerationFailure, GenerationCancelled: Generation stopped;
                the reservation has been rolled back
            ReconciliationFailure: Settlement could neither be applied nor
                recorded; the request has been rolled back
        """
        config = self.ledger.config
        check_plan_limits(config.get_plan(request.plan_tier), request)
        estimated_words = estimate_output_words(request, config.generation.quality_estimate_factors)

        self._enter(user_id, PipelineState.RESERVING_FUNDS)
        reservation = self.ledger.deduct(user_id, estimated_words, request.plan_tier, request.tool)
        settlement = Settlement(self.ledger, user_id, request.plan_tier, request.tool, reservation)

        try:
            self._enter(user_id, PipelineState.GENERATING)
            result = self.pipeline.run(user_id, request, cancel_token)

            self._enter(user_id, PipelineState.RECONCILING)
            reconciliation = Reconciliation(
                estimated_credits=reservation.credits_deducted,
                actual_credits=required_credits(
                    result.word_count, request.tool, ratios=config.credit_ratios
                )
            )
            unsettled = settlement.apply(reconciliation, result.word_count - estimated_words)
        except Exception:
            settlement.refund_on_failure()
            self._enter(user_id, PipelineState.FAILED_REFUNDED)
            raise

        self._enter(user_id, PipelineState.COMPLETE)
        logger.info(
            "Settled request for %s: estimated %d, actual %d credits",
            user_id, reconciliation.estimated_credits, reconciliation.actual_credits
        )
        return self._receipt(result, reconciliation, settlement.transaction_ids, unsettled)

    @staticmethod
    def _enter(user_id: str, state: PipelineState) -> None:
        logger.debug("Request for %s entering %s", user_id, state.value)

    @staticmethod
    def _receipt(
        result: PipelineResult,
        reconciliation: Reconciliation,
        transaction_ids: List[str],
        unsettled: int
    ) -> GenerationReceipt:
        return GenerationReceipt(
            content=result.content,
            word_count=result.word_count,
            credits_used=reconciliation.actual_credits - unsettled,
            chunks_generated=result.chunks_generated,
            refinement_cycles=result.refinement_cycles,
            detection_summary=result.detection_summary,
            reconciliation=reconciliation,
            transaction_ids=list(transaction_ids),
            unsettled_credits=unsettled,
            content_id=result.content_id,
            used_similar_content=result.used_similar_content,
            citations=result.citations
        )
