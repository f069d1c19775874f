"""Inference API clients."""
