from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Type

from promptregistry.core.runtime.settings import Settings
from promptregistry.core.sources.base import AdapterInit, SourceAdapter
from promptregistry.core.spec import SourceSpec


class AdapterRegistry:
    """
    Registry + factory for source adapters.

    Supports decorator registration:
        @registry.register("http")
        class HttpSourceAdapter: ...

    And factory instantiation bound to a registered source:
        adapter = registry.create(source, settings=settings)
    """

    def __init__(self) -> None:
        self._items: Dict[str, Type] = {}

    def register(self, kind: str):
        def deco(cls):
            self._items[kind] = cls
            return cls
        return deco

    def get(self, kind: str):
        if kind not in self._items:
            raise KeyError(f"Unknown source kind: {kind}. Loaded: {self.list()}")
        return self._items[kind]

    def list(self) -> list[str]:
        return sorted(self._items.keys())

    def create(
        self,
        source: SourceSpec,
        *,
        settings: Settings,
        env: Mapping[str, str] | None = None,
        options: Dict[str, Any] | None = None,
    ) -> SourceAdapter:
        Cls = self.get(source.kind)
        env2 = dict(os.environ) if env is None else dict(env)
        return Cls(AdapterInit(source=source, settings=settings, env=env2, options=dict(options or {})))


# Singleton registry used by core + plugins
REGISTRY = AdapterRegistry()


def register_adapter(kind: str):
    return REGISTRY.register(kind)


def get_adapter(kind: str):
    return REGISTRY.get(kind)


def list_adapters() -> list[str]:
    return REGISTRY.list()
