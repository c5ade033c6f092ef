"""
Status dashboard for the AC Infinity bridge.
"""

from .app import StatusApp, create_app

__all__ = ["StatusApp", "create_app"]
