"""Adaptive recommendation serving core: lambda architecture plus a contextual bandit."""

__version__ = "1.0.0"
