"""Runtime package management module.

This module handles:
- The runtime catalog (known-good hash table per version)
- Downloading runtime archives with retry and hashing
- The verified, atomically promoted local package cache
"""

from winpe_imagegen.packages.cache import CacheEntry, PackageCache
from winpe_imagegen.packages.catalog import RuntimeCatalog, load_catalog
from winpe_imagegen.packages.fetch import (
    DownloadResult,
    build_runtime_url,
    compute_file_sha256,
    download_file,
)

__all__ = [
    "CacheEntry",
    "DownloadResult",
    "PackageCache",
    "RuntimeCatalog",
    "build_runtime_url",
    "compute_file_sha256",
    "download_file",
    "load_catalog",
]
