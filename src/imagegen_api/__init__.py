"""Asynchronous image generation service with primary/fallback providers."""

__version__ = "0.1.0"
