"""Bounded tool-calling loop between a language model, declared tools and a request context."""

__version__ = "0.1.0"
