from promptregistry.core.scopes.base import ScopeSynchronizer, SyncOptions, SyncResult, UnsyncResult
from promptregistry.core.scopes.repository import RepositoryScopeSynchronizer
from promptregistry.core.scopes.user import UserScopeSynchronizer

__all__ = [
    "ScopeSynchronizer",
    "SyncOptions",
    "SyncResult",
    "UnsyncResult",
    "RepositoryScopeSynchronizer",
    "UserScopeSynchronizer",
]
