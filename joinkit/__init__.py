"""Cluster bootstrap join-credential toolkit."""

__version__ = "0.1.0"
