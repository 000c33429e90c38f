"""Durable job queue for care-plan recommendation work."""

__version__ = "0.1.0"
