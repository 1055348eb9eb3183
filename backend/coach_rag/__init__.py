"""Retrieval and ranking engine for the AI fitness coach."""

__version__ = "0.1.0"
