"""Resilient delivery of football match events."""

__version__ = "0.1.0"
