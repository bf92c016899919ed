from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Protocol, runtime_checkable

from promptregistry.core.runtime.settings import Settings
from promptregistry.core.spec import BundleRecord, RemoteBundle, SourceSpec


@runtime_checkable
class SourceAdapter(Protocol):
    """
    Public source adapter contract.

    An adapter speaks one remote protocol for one registered source. It lists
    the bundles the source offers and fetches their manifest and content
    archive. Adapter errors (SourceUnreachable, AuthenticationRequired) reach
    the caller unchanged.
    """

    source: SourceSpec

    def list_bundles(self) -> List[RemoteBundle]: ...

    def fetch_manifest(self, bundle: BundleRecord) -> Dict[str, Any]: ...

    def fetch_archive(self, bundle: BundleRecord) -> bytes: ...

    def close(self) -> None: ...


@dataclass
class AdapterInit:
    source: SourceSpec
    settings: Settings
    env: Mapping[str, str] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
