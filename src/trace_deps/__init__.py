"""Trace tree reconstruction and service dependency links."""

__version__ = "0.1.0"
