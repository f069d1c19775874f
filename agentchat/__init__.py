"""Streaming conversation engine for tool-augmented language model agents."""

__version__ = "0.1.0"
