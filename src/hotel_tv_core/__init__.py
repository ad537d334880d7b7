"""Coordination core for hotel in-room TV devices."""

__version__ = "1.0.0"
