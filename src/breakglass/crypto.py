"""AES-256-GCM envelope for secrets stored in the grant index.

Master keys come from a JSON secret ``{"Keys": {"<keyID>": "<hex>"}}`` where
each key ID is the unix time from which that key becomes current. Every
encryption draws a fresh 12-byte nonce, derives a one-off 256-bit key from
the master key with HKDF-SHA256 (nonce as salt) and appends the nonce to the
sealed payload. Ciphertext travels to the index as unpadded base64.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import secrets
import time
from typing import Callable, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from breakglass.errors import BreakGlassError, ErrorCode

logger = logging.getLogger("breakglass.crypto")

NONCE_SIZE = 12
KEY_SIZE = 32


def _derive_key(master_key: bytes, nonce: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=nonce, info=None).derive(master_key)


def b64encode_raw(data: bytes) -> str:
    """Standard base64 without padding."""
    return base64.b64encode(data).decode("ascii").rstrip("=")


def b64decode_raw(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.b64decode(padded, validate=True)


class KeyRing:
    """Set of master keys indexed by key ID. Immutable after construction."""

    def __init__(self, keys: Mapping[int, bytes], clock: Callable[[], float] = time.time) -> None:
        for key_id, key in keys.items():
            if len(key) != KEY_SIZE:
                raise BreakGlassError(
                    ErrorCode.CONFIG_ERROR,
                    f"master key {key_id} must be {KEY_SIZE} bytes, got {len(key)}",
                )
        self._keys = dict(keys)
        self._clock = clock

    @classmethod
    def from_json(cls, raw: str, clock: Callable[[], float] = time.time) -> "KeyRing":
        """Parse the ``{"Keys": {"<id>": "<hex>"}}`` secret format."""
        try:
            data = json.loads(raw)
            entries = data["Keys"]
            keys = {int(key_id): bytes.fromhex(hex_key) for key_id, hex_key in entries.items()}
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise BreakGlassError(ErrorCode.CONFIG_ERROR, "failed to parse master key secret") from exc
        return cls(keys, clock=clock)

    @classmethod
    def from_env(cls, env_var: str = "BGCACHE_MASTER_KEY", clock: Callable[[], float] = time.time) -> "KeyRing":
        raw = os.environ.get(env_var, "")
        if not raw:
            raise BreakGlassError(ErrorCode.CONFIG_ERROR, f"{env_var} is not set")
        return cls.from_json(raw, clock=clock)

    @staticmethod
    def generate_key() -> str:
        """Return a fresh random master key as hex."""
        return secrets.token_bytes(KEY_SIZE).hex()

    @property
    def key_ids(self) -> list[int]:
        return sorted(self._keys)

    def current_key_id(self) -> int:
        """Largest key ID not in the future."""
        now = int(self._clock())
        candidates = [key_id for key_id in self._keys if key_id <= now]
        if not candidates:
            raise BreakGlassError(ErrorCode.ENCRYPTION_ERROR, "no master key is active yet")
        return max(candidates)

    def encrypt(self, plaintext: bytes) -> tuple[bytes, int]:
        """Seal plaintext under the current key. Returns (ciphertext || nonce, keyID)."""
        key_id = self.current_key_id()
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(_derive_key(self._keys[key_id], nonce)).encrypt(nonce, plaintext, None)
        return sealed + nonce, key_id

    def decrypt(self, data: bytes, key_id: int) -> bytes:
        master = self._keys.get(key_id)
        if master is None:
            raise BreakGlassError(ErrorCode.DECRYPTION_ERROR, f"unknown key id {key_id}", {"keyID": key_id})
        if len(data) < NONCE_SIZE:
            raise BreakGlassError(ErrorCode.DECRYPTION_ERROR, "data is too short to contain a nonce")
        nonce, sealed = data[-NONCE_SIZE:], data[:-NONCE_SIZE]
        try:
            return AESGCM(_derive_key(master, nonce)).decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise BreakGlassError(ErrorCode.DECRYPTION_ERROR, "failed to decrypt data", {"keyID": key_id}) from exc

    # -- index transport helpers --

    def encrypt_for_index(self, field: str) -> tuple[str, int]:
        sealed, key_id = self.encrypt(field.encode("utf-8"))
        return b64encode_raw(sealed), key_id

    def decrypt_from_index(self, field: str, key_id: int) -> str:
        try:
            data = b64decode_raw(field)
        except (binascii.Error, ValueError) as exc:
            raise BreakGlassError(ErrorCode.DECRYPTION_ERROR, "field is not valid base64") from exc
        return self.decrypt(data, key_id).decode("utf-8")
