"""
SDK adapters for AI Credit Ledger.

Concrete text generator and content detector implementations.
"""

from .openai_client import OpenAITextGenerator
from .originality_client import OriginalityDetector

__all__ = ["OpenAITextGenerator", "OriginalityDetector"]
