"""Branching conversation backend with streamed generation."""

__version__ = "0.1.0"
