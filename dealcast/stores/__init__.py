"""Data stores for persistence and caching.

Stores handle:
- PostgreSQL: DB session, ORM operations
- Redis: copy cache, quota counters, locks, TTL policies

No business/scoring logic in stores - that belongs in services.
"""
