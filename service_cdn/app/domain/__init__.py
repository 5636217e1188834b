"""
Domain utilities for the CDN service.

Includes the API key gate, the staged request pipeline, route handlers and
file presentation helpers.
"""
