"""Redis-backed login sessions."""
