"""Provably fair dice, crash and mines with an exactly-once settlement ledger."""

__version__ = "1.0.0"
