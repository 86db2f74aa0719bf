"""Plex now-playing widget: session polling and player remote control."""

__version__ = "1.2.0"
