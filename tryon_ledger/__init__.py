"""
Gem ledger and asynchronous try-on job pipeline.
"""

__version__ = "0.1.0"
