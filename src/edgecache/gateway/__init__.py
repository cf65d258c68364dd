"""
EdgeCache Gateway

The FastAPI integration of the response cache.

The gateway provides:
- Response caching and tag invalidation decorators for endpoints
- ETag validation for public endpoints
- Module guard dependency backed by the settings gate
- Private no-cache, public rate limit and request logging middleware
- Cache operator endpoints
"""

from .app import create_app, run_server

__all__ = [
    'create_app',
    'run_server'
]
