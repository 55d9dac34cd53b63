"""Resilience layer for calls to quota-limited and failure-prone external services."""

__version__ = "0.1.0"
