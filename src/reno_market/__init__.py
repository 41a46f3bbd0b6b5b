"""Ranking, map clustering and CPC billing core for a renovation property marketplace."""

__version__ = "0.1.0"
