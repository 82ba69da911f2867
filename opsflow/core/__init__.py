"""Core application primitives: config, schemas, errors, security."""

from opsflow.core.config import Settings, get_settings

__all__ = ["Settings", "get_settings"]
