"""
Core modules for AI Credit Ledger.

This package contains the credit ledger, pricing, the generation
pipeline and its quality gate, and estimate-then-settle reconciliation.
"""
