"""Build pipeline module.

This module handles:
- Build requests and customization task planning
- Parallel customization of a mounted image
- Diagnostics snapshots on failure
- Artifact packaging, verification and manifests
- Build records
"""

from winpe_imagegen.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via winpe_imagegen.builds.orchestrator, etc.
