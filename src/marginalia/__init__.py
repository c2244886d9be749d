"""Marginalia - a local, searchable mirror of Hypothesis annotations."""

__version__ = "0.1.0"
