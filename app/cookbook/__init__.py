"""Replay documented SQL++ examples against a Couchbase query service."""

__version__ = "0.1.0"
