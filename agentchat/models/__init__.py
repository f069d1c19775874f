"""Conversation data models."""
