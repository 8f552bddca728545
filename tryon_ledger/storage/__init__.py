"""
SQLite persistence for balances, the gem ledger and job history.
"""
