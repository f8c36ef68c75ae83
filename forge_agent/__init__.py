"""Staged retrieval-and-generation pipeline for Bible study conversations."""

__version__ = "1.0.0"
