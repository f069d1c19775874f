"""Conversation services: accumulation, caching, orchestration."""
