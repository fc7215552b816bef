"""Marginalia - bridges Hypothesis annotations and Discord conversations."""

__version__ = "0.1.0"
