"""
Execution module.

Contains the protective-order ledger (stop-loss / take-profit legs).
"""
