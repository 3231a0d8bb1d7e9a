"""
Storage

File-backed configuration stores.
"""

from .config_store import ConfigStore

__all__ = ["ConfigStore"]
