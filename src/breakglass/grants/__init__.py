"""Break-glass grant cache, persistence snapshots and bootstrap."""

from breakglass.grants.bootstrap import BootstrapLoader, BootstrapResult
from breakglass.grants.cache import GrantCache
from breakglass.grants.gate import WriteGate
from breakglass.grants.models import Grant, Key, PermissionTime, PersistedDocument, ResourceGrants, document_id

__all__ = [
    "BootstrapLoader",
    "BootstrapResult",
    "Grant",
    "GrantCache",
    "Key",
    "PermissionTime",
    "PersistedDocument",
    "ResourceGrants",
    "WriteGate",
    "document_id",
]
