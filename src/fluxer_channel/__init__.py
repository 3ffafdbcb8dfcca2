"""Fluxer channel adapter for chat-agent hosts."""

__version__ = "0.1.0"
