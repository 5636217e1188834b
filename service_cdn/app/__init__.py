"""
CDN Gateway service package.

The gateway serves files held in an S3-compatible bucket, enforcing:
- Authentication: shared API key on /api routes, public /cdn delivery
- Rate limiting: fixed windows per client and route class
- Caching: in-process response cache with TTL and substring invalidation

Structure:
- app.main: FastAPI app, routes, and pipeline wiring.
- app.adapters: object storage client.
- app.caching: response cache.
- app.ratelimit: fixed-window limiter and client identity.
- app.domain: auth gate, request pipeline, handlers and file helpers.
"""
