"""
Core Ledger

An account ledger with atomic deposits, withdrawals and transfers, integer
minor-unit balances, and an append-only transaction log.
"""

__version__ = "1.0.0"
