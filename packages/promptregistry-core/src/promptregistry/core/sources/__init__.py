from promptregistry.core.sources.base import AdapterInit, SourceAdapter

__all__ = ["AdapterInit", "SourceAdapter"]
