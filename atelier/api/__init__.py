"""HTTP interface for the production engine."""

from .app import create_app

__all__ = ["create_app"]
