"""Runtime catalog: the known-good hash table for runtime packages.

The catalog is a YAML file mapping runtime versions to a download URL and
the SHA-256 the downloaded archive must have, e.g.::

    versions:
      "7.5.0":
        sha256: 5a1b...
        url: https://mirror.example.com/PowerShell-7.5.0-win-x64.zip

``url`` is optional and defaults to the official release location.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from winpe_imagegen.errors import ConfigurationError, UnsupportedVersionError
from winpe_imagegen.packages.fetch import (
    POWERSHELL_DOWNLOAD_BASE,
    VERSION_PATTERN,
    build_runtime_url,
)

logger = logging.getLogger(__name__)

SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class CatalogEntrySchema(BaseModel):
    """Known-good download information for one runtime version."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    sha256: str = Field(description="Expected SHA-256 of the archive")
    url: str | None = Field(default=None, description="Download URL override")
    arch: str = Field(default="x64", description="Windows architecture")

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str) -> str:
        """Normalize and validate the hex digest."""
        v = v.strip().lower()
        if not SHA256_PATTERN.match(v):
            raise ValueError("sha256 must be a 64 character hex digest")
        return v


class RuntimeCatalog(BaseModel):
    """Version -> known-good hash table."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(default=POWERSHELL_DOWNLOAD_BASE)
    versions: dict[str, CatalogEntrySchema] = Field(default_factory=dict)

    @field_validator("versions")
    @classmethod
    def validate_versions(
        cls, v: dict[str, CatalogEntrySchema]
    ) -> dict[str, CatalogEntrySchema]:
        """Ensure every key is an X.Y.Z version."""
        for version in v:
            if not VERSION_PATTERN.match(version):
                raise ValueError(f"catalog version must be X.Y.Z, got '{version}'")
        return v

    def entry_for(self, version: str) -> CatalogEntrySchema:
        """Return the catalog entry for a version.

        Raises:
            UnsupportedVersionError: If no hash is recorded for the version.
        """
        entry = self.versions.get(version)
        if entry is None:
            raise UnsupportedVersionError(version)
        return entry

    def expected_hash(self, version: str) -> str:
        """Return the known-good SHA-256 for a version."""
        return self.entry_for(version).sha256

    def url_for(self, version: str) -> str:
        """Return the download URL for a version."""
        entry = self.entry_for(version)
        if entry.url:
            return entry.url
        return build_runtime_url(version, entry.arch, self.base_url)

    def filename_for(self, version: str) -> str:
        """Return the archive filename for a version."""
        return self.url_for(version).rsplit("/", 1)[-1]


def parse_catalog_data(data: dict[str, Any]) -> RuntimeCatalog:
    """Parse and validate catalog data.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    # YAML turns unquoted keys such as 7.5 into floats; normalize to strings
    versions = data.get("versions") or {}
    if isinstance(versions, dict):
        data = {**data, "versions": {str(k): v for k, v in versions.items()}}
    return RuntimeCatalog.model_validate(data)


def load_catalog(path: Path) -> RuntimeCatalog:
    """Load and validate a runtime catalog from YAML.

    A missing catalog file yields an empty catalog, so every version is
    unsupported until hashes are recorded.

    Raises:
        ConfigurationError: If the file is not a valid catalog.
    """
    if not path.exists():
        logger.warning("Runtime catalog not found at %s; no versions known", path)
        return RuntimeCatalog()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in catalog {path}: {e}") from e

    if data is None:
        return RuntimeCatalog()
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}"
        )

    try:
        return parse_catalog_data(data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid catalog {path}: {e}") from e


__all__ = [
    "CatalogEntrySchema",
    "RuntimeCatalog",
    "load_catalog",
    "parse_catalog_data",
]
