"""Marker Editor - intro/credits marker management for a Plex library database."""

__version__ = "1.0.0"
