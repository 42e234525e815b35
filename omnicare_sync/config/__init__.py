"""Configuration module for OmniCare offline sync."""

from omnicare_sync.config.base import Settings
from omnicare_sync.config.loader import get_settings

__all__ = ["Settings", "get_settings"]
