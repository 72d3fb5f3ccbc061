"""Artifact verification and manifest generation.

This module handles:
- Verifying that the packaging engine produced a non-empty artifact
- Computing checksums (file hash for ISOs, tree digest for USB staging dirs)
- Writing the build manifest next to the artifact
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from winpe_imagegen.errors import PackagingError
from winpe_imagegen.packages.fetch import compute_file_sha256
from winpe_imagegen.types import BuildArtifact, TaskResult

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"


def tree_listing(root: Path) -> list[dict[str, Any]]:
    """List every file under ``root`` with its size and SHA-256.

    Paths are POSIX and relative to ``root``; the list is sorted by path.
    """
    entries: list[dict[str, Any]] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        entries.append(
            {
                "path": path.relative_to(root).as_posix(),
                "size_bytes": path.stat().st_size,
                "sha256": compute_file_sha256(path),
            }
        )
    return entries


def tree_digest(listing: list[dict[str, Any]]) -> str:
    """Digest of a tree listing: SHA-256 over ``<sha256>  <path>`` lines."""
    sha256 = hashlib.sha256()
    for entry in listing:
        sha256.update(f"{entry['sha256']}  {entry['path']}\n".encode())
    return sha256.hexdigest()


def verify_artifact(path: Path) -> tuple[int, str, list[dict[str, Any]] | None]:
    """Check an artifact exists and is non-empty, and checksum it.

    Returns:
        Tuple of (size in bytes, sha256, tree listing for directories or None).

    Raises:
        PackagingError: If the artifact is missing or empty.
    """
    if path.is_file():
        size = path.stat().st_size
        if size == 0:
            raise PackagingError(f"Artifact {path} is empty")
        return size, compute_file_sha256(path), None

    if path.is_dir():
        listing = tree_listing(path)
        size = sum(e["size_bytes"] for e in listing)
        if not listing or size == 0:
            raise PackagingError(f"Artifact directory {path} is empty")
        return size, tree_digest(listing), listing

    raise PackagingError(f"Packaging produced no artifact at {path}")


def manifest_path_for(artifact_path: Path) -> Path:
    """Return the manifest location for an artifact."""
    return artifact_path.with_name(artifact_path.name + ".manifest.json")


def generate_manifest(
    artifact: BuildArtifact,
    build_inputs: dict[str, Any] | None = None,
    listing: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    Args:
        artifact: The verified artifact.
        build_inputs: Optional serialized build request.
        listing: File listing for directory artifacts.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "artifact": {
            "path": str(artifact.path),
            "size_bytes": artifact.size_bytes,
            "sha256": artifact.sha256,
            "includes_recovery": artifact.includes_recovery,
            "runtime_version": artifact.runtime_version,
        },
        "tasks": [asdict(r) for r in artifact.task_results],
    }
    if build_inputs:
        manifest["build_inputs"] = build_inputs
    if listing is not None:
        manifest["files"] = listing
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
    logger.info("Wrote manifest to %s", output_path)
    return output_path


def finalize_artifact(
    path: Path,
    runtime_version: str,
    includes_recovery: bool,
    task_results: list[TaskResult],
    build_inputs: dict[str, Any] | None = None,
) -> BuildArtifact:
    """Verify an assembled artifact and write its manifest.

    Raises:
        PackagingError: If the artifact is missing or empty.
    """
    size, sha256, listing = verify_artifact(path)
    artifact = BuildArtifact(
        path=path,
        size_bytes=size,
        sha256=sha256,
        includes_recovery=includes_recovery,
        runtime_version=runtime_version,
        task_results=list(task_results),
    )
    manifest = generate_manifest(artifact, build_inputs=build_inputs, listing=listing)
    artifact.manifest_path = write_manifest(manifest, manifest_path_for(path))
    return artifact


__all__ = [
    "finalize_artifact",
    "generate_manifest",
    "manifest_path_for",
    "tree_digest",
    "tree_listing",
    "verify_artifact",
    "write_manifest",
]
