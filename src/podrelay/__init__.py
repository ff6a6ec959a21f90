"""Resilient podcast catalog and feed resolution."""

__version__ = "0.4.0"
