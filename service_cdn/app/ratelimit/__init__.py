"""
Rate limiting package for the CDN service.

Fixed-window counters per client identity and route class.
"""
