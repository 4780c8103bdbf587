"""
Unit tests for credit pricing and text metrics.

Tests ratio lookup, rounding behavior, and word counting helpers.
"""

import pytest

from ai_credit_ledger.core.errors import InvalidAmount
from ai_credit_ledger.core.pricing import (
    CreditRatios,
    Operation,
    Tool,
    prompt_credits,
    required_credits,
)
from ai_credit_ledger.core.text_metrics import (
    WordUsage,
    count_words,
    extract_keywords,
    flesch_kincaid_grade,
    jaccard_similarity,
    last_sentences,
    trim_to_words,
    split_sentences,
)


class TestWordUsage:
    """Test WordUsage dataclass."""

    def test_total_words_calculation(self):
        """Verify total_words is computed correctly."""
        usage = WordUsage(input_words=100, output_words=50)
        assert usage.total_words == 150

    def test_zero_words(self):
        usage = WordUsage(input_words=0, output_words=0)
        assert usage.total_words == 0


class TestCreditRatios:
    """Test ratio table lookup."""

    def test_default_ratios(self):
        """Verify the built-in words-per-credit table."""
        ratios = CreditRatios()
        assert ratios.ratio_for(Tool.WRITING) == 3
        assert ratios.ratio_for(Tool.RESEARCH) == 5
        assert ratios.ratio_for(Tool.CITATIONS) == 10
        assert ratios.ratio_for(Tool.DETECTOR, Operation.DETECTION) == 10
        assert ratios.ratio_for(Tool.DETECTOR, Operation.GENERATION) == 5
        assert ratios.ratio_for(Tool.PROMPT, Operation.INPUT) == 20
        assert ratios.ratio_for(Tool.PROMPT, Operation.OUTPUT) == 10

    def test_operation_defaults(self):
        """Detector defaults to detection, prompt to output."""
        ratios = CreditRatios()
        assert ratios.ratio_for(Tool.DETECTOR) == 10
        assert ratios.ratio_for(Tool.PROMPT) == 10

    def test_unsupported_operation_raises_error(self):
        with pytest.raises(ValueError, match="Unsupported operation"):
            CreditRatios().ratio_for(Tool.WRITING, Operation.INPUT)

    def test_non_positive_ratio_rejected(self):
        with pytest.raises(ValueError, match="writing"):
            CreditRatios(writing=0)


class TestRequiredCredits:
    """Test credit calculation accuracy and rounding."""

    def test_exact_division(self):
        """300 words at 3 words per credit is 100 credits."""
        assert required_credits(300, Tool.WRITING) == 100

    def test_rounds_up(self):
        """Partial credits always round up."""
        assert required_credits(10, Tool.WRITING) == 4
        assert required_credits(1, Tool.WRITING) == 1
        assert required_credits(101, Tool.DETECTOR, Operation.DETECTION) == 11

    def test_research_ratio(self):
        assert required_credits(1000, Tool.RESEARCH) == 200

    def test_custom_ratios(self):
        ratios = CreditRatios(writing=4)
        assert required_credits(10, Tool.WRITING, ratios=ratios) == 3

    @pytest.mark.parametrize("amount", [0, -1, None])
    def test_invalid_amount(self, amount):
        """Verify error for non-positive amounts."""
        with pytest.raises(InvalidAmount):
            required_credits(amount, Tool.WRITING)


class TestPromptCredits:
    """Test prompt credits charged for input and output separately."""

    def test_input_and_output_charged_separately(self):
        # 21 input words -> 2 credits, 11 output words -> 2 credits
        assert prompt_credits(WordUsage(input_words=21, output_words=11)) == 4

    def test_input_only(self):
        assert prompt_credits(WordUsage(input_words=40, output_words=0)) == 2

    def test_empty_usage_rejected(self):
        with pytest.raises(InvalidAmount):
            prompt_credits(WordUsage(input_words=0, output_words=0))


class TestTextMetrics:
    """Test word counting and keyword helpers."""

    def test_count_words(self):
        assert count_words("one two  three\nfour") == 4
        assert count_words("") == 0
        assert count_words("   ") == 0

    def test_split_sentences(self):
        text = "First sentence here. Second one! Is this third? Yes."
        assert split_sentences(text) == [
            "First sentence here.", "Second one!", "Is this third?", "Yes."
        ]
        assert split_sentences("  ") == []

    def test_last_sentences(self):
        text = "Alpha is first. Beta is second. Gamma is third."
        assert last_sentences(text, 2) == "Beta is second. Gamma is third."
        assert last_sentences(text, 1) == "Gamma is third."
        assert last_sentences("", 2) == ""

    def test_trim_to_words(self):
        text = "Alpha is first. Beta is second and longer. Gamma"
        assert trim_to_words(text, 20) == text
        assert trim_to_words(text, 8) == "Alpha is first. Beta is second and longer."
        assert trim_to_words(text, 6) == "Alpha is first."
        assert trim_to_words("One two three four five", 3) == "One two three"
        assert trim_to_words("Hi. one two three four five six seven eight", 6) == "Hi. one two three four five"

    def test_extract_keywords_by_frequency(self):
        text = "Climate policy shapes climate outcomes. Policy matters for the climate."
        keywords = extract_keywords(text, limit=3)
        assert keywords[0] == "climate"
        assert keywords[1] == "policy"
        assert "the" not in keywords

    def test_extract_keywords_min_length(self):
        keywords = extract_keywords("economy trade trade growth", min_length=7)
        assert keywords == ["economy"]

    def test_jaccard_similarity(self):
        assert jaccard_similarity(["a", "b"], ["a", "b"]) == 1.0
        assert jaccard_similarity(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
        assert jaccard_similarity([], []) == 0.0

    def test_flesch_kincaid_grade(self):
        simple = "The cat sat on the mat. The dog ran to the park."
        dense = (
            "Institutional considerations surrounding intergovernmental collaboration "
            "necessitate comprehensive organizational restructuring initiatives."
        )
        assert flesch_kincaid_grade("") == 0.0
        assert flesch_kincaid_grade(simple) < 5
        assert flesch_kincaid_grade(dense) > 12
