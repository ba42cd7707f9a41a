"""Clients for upstream booking platforms."""
