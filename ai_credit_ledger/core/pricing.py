"""
Credit pricing for metered tools.

Maps word amounts to generation credits using fixed words-per-credit ratios.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from enum import Enum
from typing import Optional

from .errors import InvalidAmount
from .text_metrics import WordUsage


class Tool(Enum):
    """Credit-consuming tools."""
    WRITING = "writing"
    RESEARCH = "research"
    DETECTOR = "detector"
    CITATIONS = "citations"
    PROMPT = "prompt"


class Operation(Enum):
    """Operations that carry their own ratio within a tool."""
    DETECTION = "detection"
    GENERATION = "generation"
    INPUT = "input"
    OUTPUT = "output"


@dataclass(frozen=True)
class CreditRatios:
    """Words covered by one credit, per tool and operation."""
    writing: int = 3
    research: int = 5
    citations: int = 10
    detector_detection: int = 10
    detector_generation: int = 5
    prompt_input: int = 20
    prompt_output: int = 10

    def __post_init__(self):
        """Validate every ratio is positive."""
        for name, value in self.__dict__.items():
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"credit ratio '{name}' must be a positive integer")

    def ratio_for(self, tool: Tool, operation: Optional[Operation] = None) -> int:
        """Get the words-per-credit ratio for a tool/operation pair.

        Detector defaults to detection and prompt to output when no
        operation is given.

        Raises:
            ValueError: If the operation does not apply to the tool
        """
        if tool == Tool.DETECTOR:
            if operation in (None, Operation.DETECTION):
                return self.detector_detection
            if operation == Operation.GENERATION:
                return self.detector_generation
        elif tool == Tool.PROMPT:
            if operation == Operation.INPUT:
                return self.prompt_input
            if operation in (None, Operation.OUTPUT):
                return self.prompt_output
        elif operation is None:
            return {
                Tool.WRITING: self.writing,
                Tool.RESEARCH: self.research,
                Tool.CITATIONS: self.citations,
            }[tool]
        raise ValueError(f"Unsupported operation {operation} for tool {tool.value}")


DEFAULT_RATIOS = CreditRatios()


def required_credits(
    amount: int,
    tool: Tool = Tool.WRITING,
    operation: Optional[Operation] = None,
    ratios: CreditRatios = DEFAULT_RATIOS
) -> int:
    """Calculate credits for a word amount with conservative rounding.

    Args:
        amount: Number of words
        tool: Tool consuming the credits
        operation: Optional operation within the tool
        ratios: Ratio table to price against

    Returns:
        Credits rounded UP to the next whole credit

    Raises:
        InvalidAmount: If amount is not positive
    """
    if amount is None or amount <= 0:
        raise InvalidAmount(f"invalid amount for credit calculation: {amount}")

    ratio = ratios.ratio_for(tool, operation)
    credits = (Decimal(amount) / Decimal(ratio)).quantize(Decimal("1"), rounding=ROUND_UP)
    return int(credits)


def prompt_credits(usage: WordUsage, ratios: CreditRatios = DEFAULT_RATIOS) -> int:
    """Credits for a prompt-optimizer call, charging input and output separately."""
    total = 0
    if usage.input_words > 0:
        total += required_credits(usage.input_words, Tool.PROMPT, Operation.INPUT, ratios)
    if usage.output_words > 0:
        total += required_credits(usage.output_words, Tool.PROMPT, Operation.OUTPUT, ratios)
    if total == 0:
        raise InvalidAmount("prompt usage must include input or output words")
    return total
