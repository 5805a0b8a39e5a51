"""Position risk gate and protective-order ledger."""

__version__ = "0.1.0"
