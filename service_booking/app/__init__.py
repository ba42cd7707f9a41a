"""
Booking state layer service package.

Holds the short-lived state a tour booking storefront needs between
requests. It provides:

- app.main: API surface for bookings, sessions, catalog, cache and pickups.
- app.correlation: Order-number keyed booking store (memory or Redis).
- app.sessions: Redis-backed login sessions.
- app.caching: Read-through catalog cache with warming and health reports.
- app.upstream: Async client for the Rezdy booking platform.
- app.pickups: Local pickup index and the pickup resolution chain.

Guidelines:
- State is ephemeral; every record carries an expiry.
- Upstream failures never populate the cache.
"""
