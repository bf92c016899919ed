from __future__ import annotations

import os
from importlib import import_module

from pydantic import BaseModel


class Settings(BaseModel):
    # Defaults are static. Use load_settings(env=...) to read from an env snapshot.
    work_root: str = "/tmp/promptregistry/work"
    state_root: str = "/tmp/promptregistry/state"

    # Repository scope: workspace root and the managed directory below it.
    # None means the current working directory at the time of use.
    workspace_root: str | None = None
    managed_dir: str = ".github"

    # User scope
    # - user_storage_path: the host's per-user global storage path for this tool
    #   (e.g. ~/.config/Code/User/globalStorage/<publisher.ext>)
    # - user_profile: explicit profile id; detect_user_profile reads the host's
    #   storage.json to find the active one when no explicit profile is set.
    user_storage_path: str | None = None
    user_profile: str | None = None
    detect_user_profile: bool = False

    log_level: str = "INFO"

    # Observability
    # - log_format: "text" (default) or "json". When json, events are emitted as a single
    #   JSON object per line, suitable for log aggregation.
    log_format: str = "text"

    # Optional metrics sink module (exposes METRICS: MetricsSink)
    metrics_module: str | None = None

    # Source fetching
    http_timeout: float = 30.0
    http_retries: int = 2
    fetch_workers: int = 4

    # Written into every lockfile as generatedBy.
    generated_by: str = "prompt-registry@0.4.0"

    @classmethod
    def from_env(cls, env: dict[str, str], overrides: dict | None = None) -> "Settings":
        """Build Settings from an explicit env snapshot (does not read os.environ)."""
        def g(key: str, default: str | None = None) -> str | None:
            return env.get(key, default)  # type: ignore[return-value]

        data = {
            "work_root": g("PROMPTREGISTRY_WORK_ROOT", "/tmp/promptregistry/work"),
            "state_root": g("PROMPTREGISTRY_STATE_ROOT", "/tmp/promptregistry/state"),
            "workspace_root": g("PROMPTREGISTRY_WORKSPACE_ROOT") or None,
            "managed_dir": g("PROMPTREGISTRY_MANAGED_DIR", ".github"),
            "user_storage_path": g("PROMPTREGISTRY_USER_STORAGE") or None,
            "user_profile": g("PROMPTREGISTRY_USER_PROFILE") or None,
            "detect_user_profile": (g("PROMPTREGISTRY_DETECT_PROFILE", "false") or "false").lower() == "true",
            "log_level": g("PROMPTREGISTRY_LOG_LEVEL", "INFO"),
            "log_format": g("PROMPTREGISTRY_LOG_FORMAT", "text"),
            "metrics_module": g("PROMPTREGISTRY_METRICS_MODULE") or None,
            "http_timeout": float(g("PROMPTREGISTRY_HTTP_TIMEOUT", "30") or 30),
            "http_retries": int(g("PROMPTREGISTRY_HTTP_RETRIES", "2") or 0),
            "fetch_workers": int(g("PROMPTREGISTRY_FETCH_WORKERS", "4") or 1),
        }
        if overrides:
            data.update(overrides)
        return cls(**data)


def load_settings(overrides: dict | None = None, *, env: dict[str, str] | None = None) -> Settings:
    """Load settings from (1) env snapshot, (2) optional settings module, (3) explicit overrides.

    If env is not provided, a snapshot is built from os.environ.
    """
    env2 = {k: str(v) for k, v in os.environ.items()} if env is None else env
    s = Settings.from_env(env2)
    mod = env2.get("PROMPTREGISTRY_SETTINGS_MODULE")
    if mod:
        m = import_module(mod)
        data = getattr(m, "SETTINGS", {})
        if not isinstance(data, dict):
            raise TypeError("PROMPTREGISTRY_SETTINGS_MODULE must expose SETTINGS: dict")
        s = s.model_copy(update=data)
    if overrides:
        s = s.model_copy(update=overrides)
    return s
