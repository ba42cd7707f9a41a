"""
Catalog caching package.

Provides the in-process read-through cache for catalog and availability
data, per-entity TTL policies, and the popular-category warm plan.
"""
