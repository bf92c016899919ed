"""Public, stable API surface for the prompt registry.

If you're integrating the registry into your own tooling or writing a source
adapter, import from **`promptregistry.core.api`**.

Everything outside this package is considered internal and may change without
notice, even in minor releases.
"""

from __future__ import annotations

# Bundle id contract + manifest parsing
from promptregistry.core.bundles import bundle_id, load_manifest, parse_manifest
# Checksums
from promptregistry.core.checksum import checksum, file_checksum
# Errors
from promptregistry.core.exception import (
    AuthenticationRequired,
    BundleNotFound,
    FileConflict,
    LockfileUnavailable,
    ManifestInvalid,
    PartialInstallFailure,
    PlacementNotSupported,
    ReferencedFileMissing,
    RegistryError,
    SourceNotFound,
    SourceUnreachable,
)
# Building blocks
from promptregistry.core.git_exclude import GitExcludeLedger
from promptregistry.core.lockfile import LockfileStore
from promptregistry.core.manager import RegistryManager
from promptregistry.core.placement import PlacementPolicy, detect_active_profile, resolve_user_root
# Source adapters
from promptregistry.core.registry.adapters import get_adapter, list_adapters, register_adapter
from promptregistry.core.sources.base import AdapterInit, SourceAdapter
# Settings
from promptregistry.core.runtime.settings import Settings, load_settings
from promptregistry.core.scopes import (
    RepositoryScopeSynchronizer,
    SyncOptions,
    SyncResult,
    UnsyncResult,
    UserScopeSynchronizer,
)
# Data model (Pydantic models)
from promptregistry.core.spec import (
    BundleQuery,
    BundleRecord,
    DeploymentManifestSpec,
    InstalledBundle,
    LockfileSpec,
    ManifestItemSpec,
    RemoteBundle,
    SourceSpec,
)

__all__ = [
    # manager
    "RegistryManager",
    # synchronizers
    "RepositoryScopeSynchronizer",
    "UserScopeSynchronizer",
    "SyncOptions",
    "SyncResult",
    "UnsyncResult",
    # building blocks
    "LockfileStore",
    "GitExcludeLedger",
    "PlacementPolicy",
    "resolve_user_root",
    "detect_active_profile",
    "checksum",
    "file_checksum",
    "bundle_id",
    "load_manifest",
    "parse_manifest",
    # settings
    "Settings",
    "load_settings",
    # models
    "SourceSpec",
    "RemoteBundle",
    "BundleRecord",
    "BundleQuery",
    "InstalledBundle",
    "DeploymentManifestSpec",
    "ManifestItemSpec",
    "LockfileSpec",
    # adapters
    "SourceAdapter",
    "AdapterInit",
    "register_adapter",
    "get_adapter",
    "list_adapters",
    # errors
    "RegistryError",
    "SourceUnreachable",
    "AuthenticationRequired",
    "ManifestInvalid",
    "ReferencedFileMissing",
    "PartialInstallFailure",
    "LockfileUnavailable",
    "FileConflict",
    "PlacementNotSupported",
    "BundleNotFound",
    "SourceNotFound",
]
