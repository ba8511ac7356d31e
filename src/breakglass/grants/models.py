"""Grant records held in memory and the document shape persisted to the index."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

from breakglass.errors import BreakGlassError, ErrorCode

API_ID_PREFIX = "api+"

# resource -> permission -> unix seconds of the latest grant
Scope = dict[str, dict[str, int]]


@dataclass
class Grant:
    """Everything known about one auth key (or one identity) in memory."""
    identity: str
    user: str
    source: str
    token: str = ""
    resources: Scope = field(default_factory=dict)

    def granted_at(self, resource: str, permission: str) -> int | None:
        return self.resources.get(resource, {}).get(permission)

    def merge(self, resource: str, permission: str, granted_at: int) -> None:
        """Record a grant; an existing time is only ever moved forward."""
        permissions = self.resources.setdefault(resource, {})
        current = permissions.get(permission)
        if current is None or granted_at > current:
            permissions[permission] = granted_at

    def snapshot(self) -> "Grant":
        """Deep copy that callers can hold without racing the cache."""
        return Grant(
            identity=self.identity,
            user=self.user,
            source=self.source,
            token=self.token,
            resources=copy.deepcopy(self.resources),
        )


# --- Persisted form ---


class PermissionTime(BaseModel):
    permission: str
    time: int


class ResourceGrants(BaseModel):
    resource: str
    permissions: list[PermissionTime] = Field(default_factory=list)


class Key(BaseModel):
    """One credential's grants. Secrets are ciphertext; empty for identity documents."""
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(default="", alias="apiKey")
    token: str = ""
    key_id: int = Field(default=0, alias="keyID")
    source: str = ""
    last_updated: int = Field(default=0, alias="lastUpdated")
    resources: list[ResourceGrants] = Field(default_factory=list)


class PersistedDocument(BaseModel):
    """All grants for one identity, as stored under ``document_id()``."""
    model_config = ConfigDict(populate_by_name=True)

    user: str = ""
    is_api: str = Field(default="false", alias="isAPI")
    keys: list[Key] = Field(default_factory=list)

    @property
    def api(self) -> bool:
        return self.is_api == "true"


def document_id(identity: str, api: bool) -> str:
    """Index id for an identity's document. Raises BreakGlassError(INVALID_IDENTITY) when empty."""
    if not identity:
        raise BreakGlassError(ErrorCode.INVALID_IDENTITY, "identity is empty, grant kept in memory only")
    return API_ID_PREFIX + identity if api else identity


def identity_from_api_id(doc_id: str) -> str | None:
    """Strip the ``api+`` prefix. Returns None when the prefix is missing."""
    if not doc_id.startswith(API_ID_PREFIX):
        return None
    return doc_id[len(API_ID_PREFIX):]
