from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from promptregistry.core.spec import BundleRecord, InstalledBundle, SourceSpec


class StateStore:
    """Registry state: registered sources, cached bundle records, installed bundles.

    Rows keep the pydantic model as JSON in ``payload``; key columns are
    duplicated for lookups and ordering. One state directory serves many
    workspaces, so installed bundles are keyed by where they were installed.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        c = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        try:
            yield c
        finally:
            c.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as c:
            c.execute("BEGIN IMMEDIATE")
            try:
                yield c
            except BaseException:
                c.execute("ROLLBACK")
                raise
            c.execute("COMMIT")

    def _init(self):
        with self._connect() as c:
            c.execute("PRAGMA journal_mode=WAL;")
            c.execute(
                """CREATE TABLE IF NOT EXISTS sources(
                    id TEXT PRIMARY KEY,
                    priority INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );"""
            )
            c.execute(
                """CREATE TABLE IF NOT EXISTS bundles(
                    id TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );"""
            )
            c.execute("CREATE INDEX IF NOT EXISTS idx_bundles_source ON bundles(source_id);")
            c.execute(
                """CREATE TABLE IF NOT EXISTS installed_bundles(
                    bundle_id TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    install_path TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY(bundle_id, scope, install_path)
                );"""
            )

    # ------------------------------------------------------------------
    # sources
    # ------------------------------------------------------------------

    def upsert_source(self, source: SourceSpec) -> None:
        now = int(time.time())
        with self._connect() as c:
            c.execute(
                "INSERT OR REPLACE INTO sources(id, priority, payload, updated_at) VALUES (?,?,?,?)",
                (source.id, int(source.priority), source.model_dump_json(), now),
            )

    def get_source(self, source_id: str) -> Optional[SourceSpec]:
        with self._connect() as c:
            row = c.execute("SELECT payload FROM sources WHERE id=?", (source_id,)).fetchone()
        return SourceSpec.model_validate_json(row[0]) if row else None

    def list_sources(self) -> List[SourceSpec]:
        with self._connect() as c:
            rows = c.execute("SELECT payload FROM sources ORDER BY priority DESC, id").fetchall()
        return [SourceSpec.model_validate_json(r[0]) for r in rows]

    def delete_source(self, source_id: str) -> bool:
        """Delete a source and its cached bundle records. Returns whether it existed."""
        with self._tx() as c:
            cur = c.execute("DELETE FROM sources WHERE id=?", (source_id,))
            c.execute("DELETE FROM bundles WHERE source_id=?", (source_id,))
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # cached bundle records
    # ------------------------------------------------------------------

    def replace_bundles(self, source_id: str, records: Iterable[BundleRecord]) -> None:
        now = int(time.time())
        with self._tx() as c:
            c.execute("DELETE FROM bundles WHERE source_id=?", (source_id,))
            for r in records:
                c.execute(
                    "INSERT OR REPLACE INTO bundles(id, source_id, payload, updated_at) VALUES (?,?,?,?)",
                    (r.id, r.source_id, r.model_dump_json(), now),
                )

    def upsert_bundle(self, record: BundleRecord) -> None:
        now = int(time.time())
        with self._connect() as c:
            c.execute(
                "INSERT OR REPLACE INTO bundles(id, source_id, payload, updated_at) VALUES (?,?,?,?)",
                (record.id, record.source_id, record.model_dump_json(), now),
            )

    def get_bundle(self, bundle_id: str) -> Optional[BundleRecord]:
        with self._connect() as c:
            row = c.execute("SELECT payload FROM bundles WHERE id=?", (bundle_id,)).fetchone()
        return BundleRecord.model_validate_json(row[0]) if row else None

    def list_bundles(self, source_id: str | None = None) -> List[BundleRecord]:
        with self._connect() as c:
            if source_id is None:
                rows = c.execute("SELECT payload FROM bundles ORDER BY id").fetchall()
            else:
                rows = c.execute("SELECT payload FROM bundles WHERE source_id=? ORDER BY id", (source_id,)).fetchall()
        return [BundleRecord.model_validate_json(r[0]) for r in rows]

    # ------------------------------------------------------------------
    # installed bundles
    # ------------------------------------------------------------------

    def put_installed(self, installed: InstalledBundle) -> None:
        now = int(time.time())
        with self._connect() as c:
            c.execute(
                "INSERT OR REPLACE INTO installed_bundles(bundle_id, scope, install_path, payload, updated_at) "
                "VALUES (?,?,?,?,?)",
                (installed.bundle_id, installed.scope, installed.install_path, installed.model_dump_json(), now),
            )

    def get_installed(self, bundle_id: str, scope: str, install_path: str) -> Optional[InstalledBundle]:
        with self._connect() as c:
            row = c.execute(
                "SELECT payload FROM installed_bundles WHERE bundle_id=? AND scope=? AND install_path=?",
                (bundle_id, scope, install_path),
            ).fetchone()
        return InstalledBundle.model_validate_json(row[0]) if row else None

    def delete_installed(self, bundle_id: str, scope: str, install_path: str) -> bool:
        with self._connect() as c:
            cur = c.execute(
                "DELETE FROM installed_bundles WHERE bundle_id=? AND scope=? AND install_path=?",
                (bundle_id, scope, install_path),
            )
            return cur.rowcount > 0

    def list_installed(self, scope: str | None = None, install_path: str | None = None) -> List[InstalledBundle]:
        where: List[str] = []
        args: List[str] = []
        if scope is not None:
            where.append("scope=?")
            args.append(scope)
        if install_path is not None:
            where.append("install_path=?")
            args.append(install_path)
        sql = "SELECT payload FROM installed_bundles"
        if where:
            sql += " WHERE " + " AND ".join(where)
        with self._connect() as c:
            rows = c.execute(sql + " ORDER BY scope, install_path, bundle_id", args).fetchall()
        return [InstalledBundle.model_validate_json(r[0]) for r in rows]
