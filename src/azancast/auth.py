"""Broadcaster and listener authorization.

Authorization is plain string equality against a secret known in advance.
What matters is the lifecycle of the session key: it is generated once when a
broadcaster first authorizes, persisted, and reused (sticky-key policy) until
an operator rotates it.
"""

import logging
import secrets
from dataclasses import replace

from src.azancast.errors import WrongKeyOrNoBroadcastYetError, WrongSecretError
from src.azancast.keystore import KeyStore
from src.azancast.models import ListenerAuthorizationRecord
from src.common.types import SessionKey

logger = logging.getLogger(__name__)


def generate_session_key(digits: int = 6) -> SessionKey:
    """Generate a uniformly random numeric session key.

    Collisions are not checked against any registry; the transport rejects a
    duplicate registration instead.

    Args:
        digits: Number of digits, leading zeros included

    Returns:
        Zero-padded numeric string of exactly ``digits`` characters
    """
    return f"{secrets.randbelow(10**digits):0{digits}d}"


class AuthorizationManager:
    """Validates role secrets and owns the session key lifecycle."""

    def __init__(
        self,
        key_store: KeyStore,
        broadcast_secret: str,
        session_key_digits: int = 6,
    ) -> None:
        """Initialize authorization manager.

        Args:
            key_store: Store for the session key and listener record
            broadcast_secret: Secret a broadcaster must submit verbatim
            session_key_digits: Length of generated session keys
        """
        self.key_store = key_store
        self._broadcast_secret = broadcast_secret
        self.session_key_digits = session_key_digits

    async def authorize_broadcaster(self, candidate: str) -> SessionKey:
        """Authorize a broadcaster and return the session key to publish under.

        Reuses the persisted key when one exists; otherwise generates one and
        persists it.

        Args:
            candidate: Secret submitted by the operator (no normalization)

        Returns:
            Session key

        Raises:
            WrongSecretError: If candidate differs from the broadcast secret
        """
        if candidate != self._broadcast_secret:
            logger.info("Broadcaster authorization rejected")
            raise WrongSecretError()

        record = await self.key_store.load()
        if record.session_key:
            logger.info("Broadcaster authorized, reusing session key")
            return record.session_key

        session_key = generate_session_key(self.session_key_digits)
        persisted = await self.key_store.save_record(replace(record, session_key=session_key))
        logger.info(
            "Broadcaster authorized, generated session key",
            extra={"persisted": persisted},
        )
        return session_key

    async def authorize_listener(
        self, candidate: str, current_session_key: str | None
    ) -> ListenerAuthorizationRecord:
        """Authorize a listener against the currently published session key.

        Args:
            candidate: Key submitted by the listener
            current_session_key: Key the broadcaster published, if any

        Returns:
            The listener authorization record that was persisted

        Raises:
            WrongKeyOrNoBroadcastYetError: If no key is published or it differs
        """
        if not current_session_key:
            logger.info("Listener authorization rejected, no broadcast yet")
            raise WrongKeyOrNoBroadcastYetError(no_broadcast=True)

        if candidate != current_session_key:
            logger.info("Listener authorization rejected, wrong key")
            raise WrongKeyOrNoBroadcastYetError()

        record = await self.key_store.load()
        persisted = await self.key_store.save_record(
            replace(record, listener_authorized=True, listener_key=candidate)
        )
        logger.info("Listener authorized", extra={"persisted": persisted})
        return ListenerAuthorizationRecord(authorized=True, key=candidate)

    async def restore_listener_authorization(self) -> ListenerAuthorizationRecord | None:
        """Return the persisted listener authorization, if any.

        Returns:
            The record when the listener was authorized with a non-empty key,
            otherwise None
        """
        record = await self.key_store.load()
        if record.listener_authorized and record.listener_key:
            return ListenerAuthorizationRecord(authorized=True, key=record.listener_key)
        return None

    async def current_session_key(self) -> SessionKey | None:
        """Return the persisted session key, if one was ever generated."""
        record = await self.key_store.load()
        return record.session_key

    async def rotate_session_key(self) -> SessionKey:
        """Force a fresh session key and persist it.

        Listeners authorized under the previous key stop auto-connecting
        until they are given the new key.

        Returns:
            The new session key
        """
        record = await self.key_store.load()
        session_key = generate_session_key(self.session_key_digits)
        while session_key == record.session_key:
            session_key = generate_session_key(self.session_key_digits)

        await self.key_store.save_record(replace(record, session_key=session_key))
        logger.info("Session key rotated")
        return session_key

    async def revoke_listener(self) -> None:
        """Forget the persisted listener authorization."""
        record = await self.key_store.load()
        await self.key_store.save_record(
            replace(record, listener_authorized=False, listener_key=None)
        )
        logger.info("Listener authorization revoked")
