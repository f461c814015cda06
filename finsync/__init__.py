"""
finsync - Personal Finance Tracker Core

A local-first personal finance tracker: accounts, transactions,
budgets, recurring transactions and net-worth snapshots, mirrored to a
backend for multi-device use.

DESIGN PRINCIPLES:
1. The local store is the source of truth for the user
2. Recurring transactions are materialized exactly once
3. Sync is last-write-wins, never a silent merge
4. Every sync and generation step is logged
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "finsync Team"
