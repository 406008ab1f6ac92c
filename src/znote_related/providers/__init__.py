"""Embedding provider adapters."""
