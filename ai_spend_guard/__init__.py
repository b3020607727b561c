"""AI Spend Guard: consolidated AI provider spend with cap alerts."""

__version__ = "0.1.0"
