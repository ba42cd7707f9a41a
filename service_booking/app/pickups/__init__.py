"""
Pickup data package.

Indexes the local pickup files by product and region, and resolves
pickups for a product from local data first and the upstream API second.
"""
