"""Storage module."""

from .objects import IObjectStorage, LocalObjectStorage
from .storage import ORPHAN_MAX_AGE, IStorage, Storage

__all__ = ["IObjectStorage", "IStorage", "LocalObjectStorage", "ORPHAN_MAX_AGE", "Storage"]
