from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import httpx
import yaml
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from promptregistry.core.bundles import find_manifest, load_manifest, zip_directory
from promptregistry.core.exception import AuthenticationRequired, ManifestInvalid, SourceUnreachable
from promptregistry.core.registry.adapters import register_adapter
from promptregistry.core.sources.base import AdapterInit
from promptregistry.core.spec import BundleRecord, RemoteBundle

log = logging.getLogger("promptregistry.core.builtin.adapters")


class _Base:
    """Small concrete base for built-in adapters (keeps init consistent)."""

    def __init__(self, init: AdapterInit):
        self.source = init.source
        self.settings = init.settings
        self.env = init.env
        self.options = init.options

    def close(self) -> None:
        return None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@register_adapter("filesystem")
class FilesystemSourceAdapter(_Base):
    """
    Source backed by a local directory.

    Every subdirectory holding a deployment manifest is one collection (the
    root itself counts when it holds one). The source id serves as repository
    slug; archives are zipped in memory.
    """

    def root(self) -> Path:
        url = self.source.url
        if url.startswith("file://"):
            url = url[len("file://"):]
        return Path(url).expanduser()

    def _collection_dirs(self) -> List[Path]:
        root = self.root()
        if not root.is_dir():
            raise SourceUnreachable(f"Source directory not found: {root}", source_id=self.source.id)
        dirs = [root] if find_manifest(root) is not None else []
        dirs.extend(d for d in sorted(root.iterdir()) if d.is_dir() and find_manifest(d) is not None)
        return dirs

    def list_bundles(self) -> List[RemoteBundle]:
        out: List[RemoteBundle] = []
        for d in self._collection_dirs():
            try:
                m = load_manifest(d)
            except ManifestInvalid as e:
                log.warning("skipping collection with invalid manifest source=%s dir=%s: %s", self.source.id, d, e)
                continue
            if m is None:
                continue
            out.append(
                RemoteBundle(
                    collection_id=m.id,
                    version=m.version,
                    repo_slug=self.source.id,
                    name=m.name,
                    description=m.description,
                    location={"path": str(d)},
                )
            )
        return out

    def _dir(self, bundle: BundleRecord) -> Path:
        p = bundle.location.get("path")
        if not p or not Path(p).is_dir():
            raise SourceUnreachable(f"Collection directory not found for {bundle.id}: {p}", source_id=self.source.id)
        return Path(p)

    def fetch_manifest(self, bundle: BundleRecord) -> Dict[str, Any]:
        mf = find_manifest(self._dir(bundle))
        if mf is None:
            raise ManifestInvalid(f"No deployment manifest for {bundle.id}", bundle_id=bundle.id)
        return yaml.safe_load(mf.read_text(encoding="utf-8")) or {}

    def fetch_archive(self, bundle: BundleRecord) -> bytes:
        return zip_directory(self._dir(bundle))


@register_adapter("http")
class HttpSourceAdapter(_Base):
    """
    Source served over HTTP(S), backed by httpx.

    Layout below the source url:
      index.json   {"repo": "owner/repo", "bundles": [{"id", "version", "name", "description",
                    "manifest": <path or url>, "archive": <path or url>}]}

    A bearer token is read from the environment variable named by the
    source's credential_ref.
    """

    def __init__(self, init: AdapterInit):
        super().__init__(init)
        self._client: httpx.Client | None = None

    def _attempts(self) -> int:
        return max(1, int(self.settings.http_retries) + 1)

    def base_url(self) -> str:
        return self.source.url.rstrip("/") + "/"

    def headers(self) -> dict:
        h = {"Accept": "application/json, application/zip, */*"}
        ref = self.source.credential_ref
        token = self.env.get(ref) if ref else None
        if token:
            h["Authorization"] = f"Bearer {token}"
        return h

    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url(),
                headers=self.headers(),
                timeout=float(self.settings.http_timeout),
                follow_redirects=True,
                transport=self.options.get("transport"),
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _get(self, url: str) -> httpx.Response:
        @retry(
            stop=stop_after_attempt(self._attempts()),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        def _do() -> httpx.Response:
            return self.client().get(url)

        try:
            resp = _do()
        except httpx.TransportError as e:
            raise SourceUnreachable(f"Source {self.source.id} unreachable: GET {url}: {e}", source_id=self.source.id) from e

        if resp.status_code in (401, 403):
            raise AuthenticationRequired(
                f"Source {self.source.id} requires authentication (HTTP {resp.status_code}): GET {url}",
                source_id=self.source.id,
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise SourceUnreachable(
                f"Source {self.source.id} answered HTTP {resp.status_code}: GET {url}",
                source_id=self.source.id,
                status_code=resp.status_code,
            )
        return resp

    def list_bundles(self) -> List[RemoteBundle]:
        resp = self._get("index.json")
        try:
            data = resp.json()
        except ValueError as e:
            raise SourceUnreachable(f"Source {self.source.id} returned an invalid index: {e}", source_id=self.source.id) from e
        if not isinstance(data, dict):
            raise SourceUnreachable(f"Source {self.source.id} returned an invalid index", source_id=self.source.id)

        repo = str(data.get("repo") or self.source.id)
        out: List[RemoteBundle] = []
        for b in data.get("bundles") or []:
            if not isinstance(b, dict) or not b.get("id") or not b.get("version") or not b.get("archive"):
                log.warning("skipping incomplete index entry source=%s entry=%s", self.source.id, b)
                continue
            location = {"archive": str(b["archive"])}
            if b.get("manifest"):
                location["manifest"] = str(b["manifest"])
            out.append(
                RemoteBundle(
                    collection_id=str(b["id"]),
                    version=b["version"],
                    repo_slug=str(b.get("repo") or repo),
                    name=b.get("name"),
                    description=b.get("description"),
                    location=location,
                )
            )
        return out

    def fetch_manifest(self, bundle: BundleRecord) -> Dict[str, Any]:
        url = bundle.location.get("manifest")
        if not url:
            raise ManifestInvalid(f"Source {self.source.id} publishes no manifest for {bundle.id}", bundle_id=bundle.id)
        resp = self._get(url)
        try:
            data = yaml.safe_load(resp.text)
        except yaml.YAMLError as e:
            raise ManifestInvalid(f"Malformed manifest for {bundle.id}: {e}", bundle_id=bundle.id) from e
        return data or {}

    def fetch_archive(self, bundle: BundleRecord) -> bytes:
        url = bundle.location.get("archive")
        if not url:
            raise SourceUnreachable(f"No archive location for {bundle.id}", source_id=self.source.id)
        return self._get(url).content
