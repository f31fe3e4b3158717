"""Identity Manager: the stable participant identity of this installation."""

from __future__ import annotations

import logging
import secrets
import threading

from uuid_extensions import uuid7 as make_uuid7

from .errors import StoreError
from .models import Identity, now_ms
from .sanitize import sanitize_display_name
from .store import LocalStore

logger = logging.getLogger(__name__)


def default_display_name() -> str:
    return f"Viewer-{secrets.token_hex(2)}"


class IdentityManager:
    """Creates, persists and renames the local identity.

    If the store is unavailable the manager falls back to an ephemeral
    identity held in memory; the same ephemeral identity is returned for
    the lifetime of the manager.
    """

    def __init__(self, store: LocalStore):
        self._store = store
        self._lock = threading.Lock()
        self._ephemeral: Identity | None = None

    def get_or_create_identity(self) -> Identity:
        """Return the persisted identity, creating it on first use.

        Always returns the same `id` for an installation. Updates `last_seen`.
        """
        with self._lock:
            try:
                identity = self._store.get_identity()
                if identity is None:
                    identity = Identity(id=str(make_uuid7()), display_name=default_display_name())
                    logger.info(f"Created identity {identity.id}")
                identity.last_seen = now_ms()
                self._store.save_identity(identity)
                return identity
            except StoreError:
                logger.warning("Identity storage unavailable, using ephemeral identity", exc_info=True)
                return self._get_ephemeral()

    def _get_ephemeral(self) -> Identity:
        if self._ephemeral is None:
            self._ephemeral = Identity(
                id=str(make_uuid7()),
                display_name=default_display_name(),
                ephemeral=True,
            )
        self._ephemeral.last_seen = now_ms()
        return self._ephemeral

    def set_display_name(self, name: str | None) -> Identity:
        """Sanitize and persist a new display name.

        An empty name (after sanitizing and trimming) is ignored and the
        current identity is returned unchanged.
        """
        current = self.get_or_create_identity()
        cleaned = sanitize_display_name(name)
        if not cleaned:
            logger.debug("Ignoring empty display name")
            return current

        current.display_name = cleaned
        if current.ephemeral:
            return current
        with self._lock:
            try:
                self._store.save_identity(current)
            except StoreError:
                logger.warning("Could not persist display name", exc_info=True)
        return current
