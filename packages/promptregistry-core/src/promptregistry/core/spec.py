from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.config import ConfigDict

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

ItemKind = Literal["prompt", "instructions", "agent", "chatmode", "skill"]
Scope = Literal["repository", "user"]
CommitMode = Literal["commit", "local-only"]

ITEM_KINDS: tuple[str, ...] = ("prompt", "instructions", "agent", "chatmode", "skill")
SCOPES: tuple[str, ...] = ("repository", "user")
COMMIT_MODES: tuple[str, ...] = ("commit", "local-only")

LOCKFILE_SCHEMA_URL = "https://github.com/AmadeusITGroup/prompt-registry/schemas/lockfile.schema.json"
LOCKFILE_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Deployment manifest (carried inside a bundle)
# ---------------------------------------------------------------------------


class ManifestItemSpec(BaseModel):
    # Manifests are authored elsewhere and carry presentation keys (tags, author, ...)
    # that the installer does not need.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: Optional[str] = None
    file: str
    kind: ItemKind = Field(alias="type")

    @field_validator("id", "file", mode="before")
    @classmethod
    def _non_empty(cls, v: Any) -> Any:
        if v is None or not str(v).strip():
            raise ValueError("must be a non-empty string")
        return str(v).strip()


class DeploymentManifestSpec(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    version: str
    name: Optional[str] = None
    description: Optional[str] = None
    # Historically named `prompts` although it holds every kind of item.
    items: List[ManifestItemSpec] = Field(default_factory=list, alias="prompts")

    @field_validator("id", "version", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("items", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


# ---------------------------------------------------------------------------
# Lockfile
# ---------------------------------------------------------------------------


class LockfileFileSpec(BaseModel):
    path: str
    checksum: str


class LockfileBundleSpec(BaseModel):
    # Unknown keys written by other tools are kept on rewrite.
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    version: str
    source_id: str = Field(alias="sourceId")
    source_type: str = Field(alias="sourceType")
    installed_at: str = Field(alias="installedAt")
    files: List[LockfileFileSpec] = Field(default_factory=list)


class LockfileSourceSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    url: str = ""


class LockfileSpec(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    schema_url: str = Field(default=LOCKFILE_SCHEMA_URL, alias="$schema")
    version: str = LOCKFILE_VERSION
    generated_at: Optional[str] = Field(default=None, alias="generatedAt")
    generated_by: Optional[str] = Field(default=None, alias="generatedBy")
    bundles: Dict[str, LockfileBundleSpec] = Field(default_factory=dict)
    sources: Dict[str, LockfileSourceSpec] = Field(default_factory=dict)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Registry records
# ---------------------------------------------------------------------------


class SourceSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: Optional[str] = None
    kind: str
    url: str
    # Name of the environment variable holding the access token.
    credential_ref: Optional[str] = None
    priority: int = 0
    enabled: bool = True

    @model_validator(mode="after")
    def _default_name(self) -> "SourceSpec":
        if not self.name:
            self.name = self.id
        return self


class RemoteBundle(BaseModel):
    """A bundle as advertised by a source adapter, before it is cached."""

    collection_id: str
    version: str
    repo_slug: str
    name: Optional[str] = None
    description: Optional[str] = None
    # Adapter-specific pointers (manifest/archive paths or URLs).
    location: Dict[str, str] = Field(default_factory=dict)

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, v: Any) -> Any:
        return str(v) if isinstance(v, (int, float)) else v


class BundleRecord(BaseModel):
    id: str
    version: str
    source_id: str
    collection_id: str
    repo_slug: str
    name: Optional[str] = None
    description: Optional[str] = None
    location: Dict[str, str] = Field(default_factory=dict)
    manifest: Optional[Dict[str, Any]] = None
    content_root: Optional[str] = None


class BundleQuery(BaseModel):
    text: Optional[str] = None
    source_id: Optional[str] = None
    collection_id: Optional[str] = None


class InstalledBundle(BaseModel):
    bundle_id: str
    version: str
    scope: Scope
    install_path: str
    commit_mode: Optional[CommitMode] = None
    installed_at: str
    source_id: Optional[str] = None


__all__ = [
    "ItemKind",
    "Scope",
    "CommitMode",
    "ITEM_KINDS",
    "SCOPES",
    "COMMIT_MODES",
    "LOCKFILE_SCHEMA_URL",
    "LOCKFILE_VERSION",
    "ManifestItemSpec",
    "DeploymentManifestSpec",
    "LockfileFileSpec",
    "LockfileBundleSpec",
    "LockfileSourceSpec",
    "LockfileSpec",
    "SourceSpec",
    "RemoteBundle",
    "BundleRecord",
    "BundleQuery",
    "InstalledBundle",
]
