"""
Core modules for the try-on ledger.

This package contains the gem ledger, request validation, rate limiting,
retry, prompt building and the job orchestrator.
"""
