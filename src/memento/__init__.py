"""Memento: durable task coordination for CLI agents."""

__version__ = "0.3.0"
