"""HTTP front end that maps request paths onto bucket objects."""

from .app import create_app

__all__ = ["create_app"]
