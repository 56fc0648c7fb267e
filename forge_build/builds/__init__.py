"""Build resource and its reconciliation.

This module handles:
- The Build model and its document form
- Single-diff patching of a Build
- Phase projection
- Descendant discovery and cascading deletion
- The Build reconciler and its forward pipeline
- The SSH credentials Secret infrastructure providers hand over
"""

from forge_build.builds.credentials import SSHCredentials, ensure_credentials_secret
from forge_build.builds.schema import BUILD_GVK, Build, ProvisionerSpec

__all__ = [
    "BUILD_GVK",
    "Build",
    "ProvisionerSpec",
    "SSHCredentials",
    "ensure_credentials_secret",
]

# The reconciler is imported from forge_build.builds.controller directly
# to keep this package importable from the provisioner modules.
