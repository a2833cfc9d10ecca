"""File server API client."""

from .client import FileServerClient

__all__ = ["FileServerClient"]
