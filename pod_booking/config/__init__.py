"""Configuration package for the pod booking service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
