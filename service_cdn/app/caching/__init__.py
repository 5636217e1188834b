"""
CDN caching package.

Holds the in-process response cache used by the request pipeline. Prefer
short TTLs and explicit invalidation on writes.
"""
