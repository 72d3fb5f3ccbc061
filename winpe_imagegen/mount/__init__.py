"""Offline image mount management.

This module handles:
- The external mount/edit engine boundary (DISM)
- Exclusive, timeout-bound mount sessions keyed on the image path
- Stale session detection and recovery
"""

from winpe_imagegen.mount.engine import DismEngine, ImageEngine, RegistryValue
from winpe_imagegen.mount.session import (
    MountSession,
    MountSessionManager,
    normalize_image_path,
)

__all__ = [
    "DismEngine",
    "ImageEngine",
    "MountSession",
    "MountSessionManager",
    "RegistryValue",
    "normalize_image_path",
]
