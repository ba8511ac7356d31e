"""Build the full per-identity document written on every mutation.

Each write replaces the stored document, so a document always carries every
key known for the identity. Resources and permissions are sorted, and keys
are ordered by their plaintext auth key, so the structure does not depend on
the order in which grants arrived.
"""

from __future__ import annotations

from typing import Iterable

from breakglass.crypto import KeyRing
from breakglass.errors import BreakGlassError, ErrorCode
from breakglass.grants.models import Grant, Key, PermissionTime, PersistedDocument, ResourceGrants, Scope


def flatten_scope(scope: Scope) -> tuple[list[ResourceGrants], int]:
    """Return (sorted resource list, most recent grant time)."""
    most_recent = 0
    resources = []
    for resource in sorted(scope):
        permissions = []
        for permission in sorted(scope[resource]):
            granted_at = scope[resource][permission]
            most_recent = max(most_recent, granted_at)
            permissions.append(PermissionTime(permission=permission, time=granted_at))
        resources.append(ResourceGrants(resource=resource, permissions=permissions))
    return resources, most_recent


def build_api_document(user: str, entries: Iterable[tuple[str, Grant]], keyring: KeyRing) -> PersistedDocument:
    """Document for every (auth key, grant) pair of one identity.

    Raises BreakGlassError(KEY_MISMATCH) if the auth key and token were sealed
    under different master keys (a key rollover between the two calls).
    """
    keys = []
    for auth_key, grant in sorted(entries, key=lambda e: e[0]):
        resources, most_recent = flatten_scope(grant.resources)
        api_key_ct, api_key_id = keyring.encrypt_for_index(auth_key)
        token_ct, token_key_id = keyring.encrypt_for_index(grant.token)
        if api_key_id != token_key_id:
            raise BreakGlassError(
                ErrorCode.KEY_MISMATCH,
                "api key and token were encrypted with different key ids",
                {"apiKeyKeyID": api_key_id, "tokenKeyID": token_key_id},
            )
        keys.append(Key(
            api_key=api_key_ct,
            token=token_ct,
            key_id=api_key_id,
            source=grant.source,
            last_updated=most_recent,
            resources=resources,
        ))
    return PersistedDocument(user=user, is_api="true", keys=keys)


def build_identity_document(grant: Grant) -> PersistedDocument:
    """Document for one identity-keyed grant. Holds no secrets."""
    resources, most_recent = flatten_scope(grant.resources)
    key = Key(source=grant.source, last_updated=most_recent, resources=resources)
    return PersistedDocument(user=grant.user, is_api="false", keys=[key])
