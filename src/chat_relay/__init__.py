"""Streaming chat relay between browser clients and an OpenAI-compatible provider."""

__version__ = "0.1.0"
