"""
EdgeCache - HTTP response caching for FastAPI services.

A tag-indexed response cache with per-route key, TTL and user scoping
policy, ETag validation for public endpoints, and a TTL cached module
settings gate.
"""

__version__ = "1.0.0"
