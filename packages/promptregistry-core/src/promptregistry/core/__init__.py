"""Prompt registry core package.

Public entrypoints:
- promptregistry.core.api: stable API surface for integrations
- promptregistry.core.manager.RegistryManager: install/uninstall bundles programmatically

Internal modules may change without notice.
"""

from __future__ import annotations

__version__ = "0.4.0"
