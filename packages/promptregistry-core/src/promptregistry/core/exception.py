"""Centralized exceptions for the prompt registry.

All errors raised by the engine live in this module so callers can rely on a
single import location:

    from promptregistry.core.exception import FileConflict

Errors that concern one bundle or one file carry ``bundle_id`` / ``path`` so
callers can report exactly what failed.
"""

from __future__ import annotations

__all__ = [
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


class RegistryError(RuntimeError):
    """Base error for registry operations."""

    def __init__(self, message: str, *, bundle_id: str | None = None, path: str | None = None):
        super().__init__(message)
        self.bundle_id = bundle_id
        self.path = path

    def as_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "bundle_id": self.bundle_id,
            "path": self.path,
        }


class SourceUnreachable(RegistryError):
    """Raised by source adapters when the remote cannot be reached or answers with an error."""

    def __init__(self, message: str, *, source_id: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.source_id = source_id
        self.status_code = status_code


class AuthenticationRequired(SourceUnreachable):
    """Raised when a source rejects the request for lack of (valid) credentials."""


class ManifestInvalid(RegistryError, ValueError):
    """Raised when a deployment manifest is missing, unreadable or fails validation."""


class ReferencedFileMissing(RegistryError):
    """Raised when a manifest item points to a file that is not part of the bundle."""


class PartialInstallFailure(RegistryError):
    """Raised after a failed copy has been rolled back."""


class LockfileUnavailable(RegistryError):
    """Raised when a lockfile cannot be read or parsed. The store never guesses state."""


class FileConflict(RegistryError):
    """Raised when an install would overwrite content the engine does not own."""

    def __init__(self, message: str, *, bundle_id: str | None = None, paths: list[str] | None = None):
        paths = list(paths or [])
        super().__init__(message, bundle_id=bundle_id, path=paths[0] if paths else None)
        self.paths = paths


class PlacementNotSupported(RegistryError, ValueError):
    """Raised when a content kind has no target location in a scope."""


class BundleNotFound(RegistryError, LookupError):
    """Raised when a bundle id is neither cached nor installed."""


class SourceNotFound(RegistryError, LookupError):
    """Raised when a source id is not registered."""
