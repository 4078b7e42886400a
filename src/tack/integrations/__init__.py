"""Adapters for external model providers."""
