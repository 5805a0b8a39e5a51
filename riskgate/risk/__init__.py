"""
Risk gates: loss cooldown, historical-loss penalty, reversal classification.
"""
