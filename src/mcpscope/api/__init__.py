"""HTTP status surface."""

from .status import create_app

__all__ = ["create_app"]
