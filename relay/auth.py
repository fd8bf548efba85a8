"""Device credentials for the relay.

Tokens are opaque 256-bit random values (64 hex characters) handed out at
registration.  Each device has exactly one live token; registering again
revokes the previous one before the new one is installed.
"""

from __future__ import annotations

import logging
import secrets
import threading

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


class TokenAuthority:
    """Issues, resolves and revokes device tokens."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._device_by_token: dict[str, str] = {}
        self._token_by_device: dict[str, str] = {}

    def issue(self, device_id: str) -> str:
        """Return a fresh token for *device_id*, revoking any previous one."""
        with self._lock:
            self._revoke_locked(device_id)
            token = secrets.token_hex(TOKEN_BYTES)
            while token in self._device_by_token:
                token = secrets.token_hex(TOKEN_BYTES)
            self._device_by_token[token] = device_id
            self._token_by_device[device_id] = token
        logger.debug("Issued token for %s", device_id)
        return token

    def resolve(self, token: str | None) -> str | None:
        """Return the device id *token* belongs to, or ``None``."""
        if not token:
            return None
        with self._lock:
            return self._device_by_token.get(token)

    def revoke(self, device_id: str) -> bool:
        """Drop the live token of *device_id*.  Returns ``True`` if one existed."""
        with self._lock:
            return self._revoke_locked(device_id)

    def _revoke_locked(self, device_id: str) -> bool:
        old = self._token_by_device.pop(device_id, None)
        if old is None:
            return False
        self._device_by_token.pop(old, None)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._token_by_device)
