"""Storefront order & inventory consistency engine."""

__version__ = "1.0.0"
