"""
AI Credit Ledger.

Credit-metered, chunked text generation with an atomic ledger.
"""

__version__ = "0.1.0"
