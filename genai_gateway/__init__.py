"""Resilience and observability layer for the Gemini generative-AI API."""

__version__ = "0.1.0"
