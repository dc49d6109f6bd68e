"""Unit tests for broadcaster and listener authorization."""

from unittest.mock import patch

import pytest

from src.azancast.auth import AuthorizationManager, generate_session_key
from src.azancast.errors import WrongKeyOrNoBroadcastYetError, WrongSecretError
from src.azancast.keystore import KeyStore, MemoryKeyValueStore
from src.azancast.models import KeyStoreRecord, ListenerAuthorizationRecord, StatusCondition


@pytest.fixture
def key_store() -> KeyStore:
    return KeyStore(MemoryKeyValueStore(), key_prefix="azancast:")


@pytest.fixture
def auth(key_store: KeyStore) -> AuthorizationManager:
    return AuthorizationManager(key_store, broadcast_secret="1234")


class TestGenerateSessionKey:
    """Test session key generation."""

    def test_default_length(self) -> None:
        """Test keys are six digits by default."""
        for _ in range(50):
            key = generate_session_key()
            assert len(key) == 6
            assert key.isdigit()

    def test_leading_zeros_preserved(self) -> None:
        """Test small numbers are zero-padded."""
        with patch("src.azancast.auth.secrets.randbelow", return_value=42):
            assert generate_session_key(6) == "000042"

    def test_custom_length(self) -> None:
        """Test the configured digit count is honored."""
        assert len(generate_session_key(8)) == 8


class TestBroadcasterAuthorization:
    """Test the broadcaster secret check and the sticky key."""

    async def test_wrong_secret(self, auth: AuthorizationManager, key_store: KeyStore) -> None:
        """Test a wrong secret raises and persists nothing."""
        with pytest.raises(WrongSecretError) as exc_info:
            await auth.authorize_broadcaster("0000")

        assert exc_info.value.condition is StatusCondition.WRONG_SECRET
        assert await key_store.load() == KeyStoreRecord()

    @pytest.mark.parametrize("candidate", [" 1234", "1234 ", "", "12345"])
    async def test_secret_not_normalized(self, auth: AuthorizationManager, candidate: str) -> None:
        """Test only an exact match is accepted."""
        with pytest.raises(WrongSecretError):
            await auth.authorize_broadcaster(candidate)

    async def test_first_authorization_generates_key(
        self, auth: AuthorizationManager, key_store: KeyStore
    ) -> None:
        """Test a key is generated and persisted on first authorization."""
        key = await auth.authorize_broadcaster("1234")

        assert len(key) == 6
        assert (await key_store.load()).session_key == key

    async def test_key_is_sticky(self, auth: AuthorizationManager) -> None:
        """Test repeated authorizations return the same key."""
        first = await auth.authorize_broadcaster("1234")
        second = await auth.authorize_broadcaster("1234")

        assert first == second

    async def test_key_survives_new_manager(self, key_store: KeyStore) -> None:
        """Test a restarted client reuses the persisted key."""
        first = await AuthorizationManager(key_store, "1234").authorize_broadcaster("1234")
        second = await AuthorizationManager(key_store, "1234").authorize_broadcaster("1234")

        assert first == second

    async def test_existing_listener_record_kept(
        self, auth: AuthorizationManager, key_store: KeyStore
    ) -> None:
        """Test generating a key does not wipe a listener record."""
        await key_store.save(None, True, "111111")

        key = await auth.authorize_broadcaster("1234")

        assert await key_store.load() == KeyStoreRecord(
            session_key=key, listener_authorized=True, listener_key="111111"
        )


class TestListenerAuthorization:
    """Test listener key checks."""

    async def test_no_broadcast_yet(self, auth: AuthorizationManager) -> None:
        """Test any key is rejected when no session key exists."""
        with pytest.raises(WrongKeyOrNoBroadcastYetError) as exc_info:
            await auth.authorize_listener("482913", None)

        assert exc_info.value.no_broadcast is True
        assert exc_info.value.condition is StatusCondition.WRONG_KEY_OR_NO_BROADCAST_YET

    async def test_wrong_key(self, auth: AuthorizationManager, key_store: KeyStore) -> None:
        """Test a mismatched key is rejected and nothing is persisted."""
        with pytest.raises(WrongKeyOrNoBroadcastYetError) as exc_info:
            await auth.authorize_listener("000000", "482913")

        assert exc_info.value.no_broadcast is False
        assert await key_store.load() == KeyStoreRecord()

    async def test_correct_key_persists(
        self, auth: AuthorizationManager, key_store: KeyStore
    ) -> None:
        """Test a matching key is persisted as listener authorization."""
        record = await auth.authorize_listener("482913", "482913")

        assert record == ListenerAuthorizationRecord(authorized=True, key="482913")
        stored = await key_store.load()
        assert stored.listener_authorized is True
        assert stored.listener_key == "482913"

    async def test_restore(self, auth: AuthorizationManager) -> None:
        """Test a persisted authorization is restored."""
        assert await auth.restore_listener_authorization() is None

        await auth.authorize_listener("482913", "482913")

        restored = await auth.restore_listener_authorization()
        assert restored == ListenerAuthorizationRecord(authorized=True, key="482913")

    async def test_restore_requires_key(
        self, auth: AuthorizationManager, key_store: KeyStore
    ) -> None:
        """Test an authorized flag without a key is not restored."""
        await key_store.save(None, True, None)

        assert await auth.restore_listener_authorization() is None


class TestKeyLifecycle:
    """Test rotation and revocation."""

    async def test_rotate_changes_key(
        self, auth: AuthorizationManager, key_store: KeyStore
    ) -> None:
        """Test rotation persists a different key."""
        old = await auth.authorize_broadcaster("1234")

        new = await auth.rotate_session_key()

        assert new != old
        assert await auth.current_session_key() == new
        assert await auth.authorize_broadcaster("1234") == new

    async def test_rotate_retries_on_same_key(self, auth: AuthorizationManager) -> None:
        """Test rotation never returns the key it replaces."""
        with patch("src.azancast.auth.secrets.randbelow", side_effect=[1, 1, 2]):
            assert await auth.authorize_broadcaster("1234") == "000001"
            assert await auth.rotate_session_key() == "000002"

    async def test_revoke_listener(self, auth: AuthorizationManager) -> None:
        """Test revocation forgets the listener but keeps the session key."""
        key = await auth.authorize_broadcaster("1234")
        await auth.authorize_listener(key, key)

        await auth.revoke_listener()

        assert await auth.restore_listener_authorization() is None
        assert await auth.current_session_key() == key
