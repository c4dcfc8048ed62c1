"""Quarry - structured query compilation and multi-driver execution."""

__version__ = "0.1.0"
