"""Configuration module for the dual-store retrieval router."""
from .settings import Settings, settings
from . import logger  # Initialize logging

__all__ = ["Settings", "settings"]
