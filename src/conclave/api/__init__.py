"""HTTP control surface for the run engine."""

from .server import create_app

__all__ = ["create_app"]
