from __future__ import annotations

import json
import logging

import pytest

from promptregistry.core.observability import log_event
from promptregistry.core.runtime.settings import Settings, load_settings
from promptregistry.core.scopes import RepositoryScopeSynchronizer, SyncOptions


def _events(caplog):
    out = []
    for rec in caplog.records:
        try:
            data = json.loads(rec.getMessage())
        except ValueError:
            continue
        if isinstance(data, dict) and "event" in data:
            out.append(data)
    return out


def test_sync_events_emitted_in_json_logs(workspace, make_bundle, temp_dir, caplog: pytest.LogCaptureFixture):
    settings = load_settings(
        {"log_level": "INFO", "log_format": "json", "work_root": str(temp_dir / "w"), "state_root": str(temp_dir / "s")},
        env={},
    )
    caplog.set_level("INFO")
    repo = RepositoryScopeSynchronizer(workspace, settings=settings)
    repo.sync_bundle("kit", make_bundle("kit", [("prompt", "a", "a\n")]), SyncOptions(commit_mode="local-only"))
    repo.unsync_bundle("kit")

    events = _events(caplog)
    synced = [e for e in events if e["event"] == "bundle_synced"]
    assert len(synced) == 1
    assert synced[0]["bundle_id"] == "kit"
    assert synced[0]["slot"] == "local-only"
    assert synced[0]["files"] == 1
    assert isinstance(synced[0]["duration_ms"], int)
    assert "ts_ms" in synced[0]
    assert any(e["event"] == "bundle_unsynced" and e["removed"] == 1 for e in events)


def test_text_format(caplog: pytest.LogCaptureFixture):
    caplog.set_level("INFO")
    log_event(logging.getLogger("promptregistry.test"), settings=Settings(), level=logging.INFO,
              event="source_synced", source_id="acme", bundles=3)
    assert "source_synced source_id=acme bundles=3" in caplog.text


def test_settings_from_env():
    s = load_settings(
        env={
            "PROMPTREGISTRY_WORK_ROOT": "/w",
            "PROMPTREGISTRY_STATE_ROOT": "/s",
            "PROMPTREGISTRY_MANAGED_DIR": "cfg",
            "PROMPTREGISTRY_DETECT_PROFILE": "TRUE",
            "PROMPTREGISTRY_HTTP_RETRIES": "5",
            "PROMPTREGISTRY_LOG_FORMAT": "json",
        }
    )
    assert (s.work_root, s.state_root, s.managed_dir) == ("/w", "/s", "cfg")
    assert s.detect_user_profile is True
    assert s.http_retries == 5
    assert s.log_format == "json"
    assert s.workspace_root is None


def test_settings_module_and_overrides(tmp_path, monkeypatch):
    (tmp_path / "team_settings.py").write_text('SETTINGS = {"managed_dir": "team", "fetch_workers": 8}\n', encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    s = load_settings({"fetch_workers": 2}, env={"PROMPTREGISTRY_SETTINGS_MODULE": "team_settings"})
    assert s.managed_dir == "team"
    assert s.fetch_workers == 2
