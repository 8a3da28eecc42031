"""Persistence, caching and deduplication services."""
