"""Conversation, message and usage persistence."""
