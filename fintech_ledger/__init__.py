"""
Fintech Ledger

Account ledger and transfer engine: moves money between accounts with
fixed-point Decimal arithmetic, ordered account locking, atomic storage
transactions and a hash-chained audit trail.
"""

__version__ = "1.0.0"
