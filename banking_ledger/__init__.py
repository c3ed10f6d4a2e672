"""
Banking Ledger

Account balances and an append-only transaction ledger, mutated together
under a single storage transaction. All monetary values use Decimal.
"""

__version__ = "1.0.0"
