"""Kai matching engine: caterer scoring, AI re-ranking and round-robin lead distribution."""

__version__ = "1.0.0"
