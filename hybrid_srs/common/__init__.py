"""Shared infrastructure: logging, error handling and caching."""
