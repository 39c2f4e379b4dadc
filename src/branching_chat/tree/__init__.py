"""Conversation tree primitives, legacy conversion and prompt building."""
