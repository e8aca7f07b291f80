"""Resilient structured-output and tool-calling model layer for deck generation."""

__version__ = "0.1.0"
