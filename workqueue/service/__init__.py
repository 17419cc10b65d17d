"""
HTTP service - producer API, worker trigger and maintenance endpoints
"""

from .app import create_app

__all__ = ["create_app"]
