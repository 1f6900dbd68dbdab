"""Conversation memory capture, storage, and consolidation."""

__version__ = "0.1.0"
