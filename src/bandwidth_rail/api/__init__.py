"""
HTTP API for Bandwidth Rail.
"""

from .server import create_app, AppState

__all__ = ["create_app", "AppState"]
