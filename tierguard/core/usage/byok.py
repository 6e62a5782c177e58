"""
Bring-your-own-key (BYOK) override.

Active BYOK subscribers are billed through their own upstream provider
credentials, so AI rate limits and quotas do not apply to them. Their usage
is still recorded. A BYOK user without credentials for the requested
provider is a configuration error and is raised, never treated as unlimited.

Credentials are stored Fernet-encrypted as one JSON document per user in the
``user_secrets`` table.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import text

from tierguard.config import get_settings
from tierguard.db.connection import db
from tierguard.db.utils import with_db_retry
from .exceptions import MissingProviderKeyError
from .schemas import ProviderKeys, SubscriptionStatus
from .subscription_manager import SubscriptionManager, get_subscription_manager
from .tiers import Tier

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = tuple(ProviderKeys.model_fields.keys())


class KeyEncryptor:
    """Encrypts and decrypts provider credential documents."""

    def __init__(self, key: Optional[str] = None):
        key = key or get_settings().encryption_key
        if not key:
            logger.warning(
                "TIERGUARD_ENCRYPTION_KEY not set, using a process-local key; "
                "stored provider keys will be unreadable after restart"
            )
            key = Fernet.generate_key().decode()
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, keys: ProviderKeys) -> str:
        payload = json.dumps(keys.model_dump(exclude_none=True))
        return self._fernet.encrypt(payload.encode()).decode()

    def decrypt(self, token: str) -> ProviderKeys:
        """
        Raises:
            InvalidToken: if the document was encrypted with another key
        """
        payload = self._fernet.decrypt(token.encode())
        return ProviderKeys.model_validate(json.loads(payload))


class ProviderKeyStore(ABC):
    """Persistence for encrypted credential documents."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put(self, user_id: str, encrypted: str) -> None:
        ...


class SqlProviderKeyStore(ProviderKeyStore):
    """user_secrets table, one row per user."""

    @with_db_retry
    async def get(self, user_id: str) -> Optional[str]:
        async with db.session() as session:
            if session is None:
                return None
            result = await session.execute(
                text("SELECT encrypted_keys FROM user_secrets WHERE user_id = :user_id"),
                {"user_id": user_id},
            )
            return result.scalar()

    async def put(self, user_id: str, encrypted: str) -> None:
        async with db.session() as session:
            if session is None:
                raise RuntimeError("Database disabled, cannot store provider keys")
            await session.execute(
                text("""
                    INSERT INTO user_secrets (user_id, encrypted_keys, updated_at)
                    VALUES (:user_id, :encrypted_keys, :now)
                    ON CONFLICT (user_id) DO UPDATE SET
                        encrypted_keys = EXCLUDED.encrypted_keys,
                        updated_at = EXCLUDED.updated_at
                """),
                {
                    "user_id": user_id,
                    "encrypted_keys": encrypted,
                    "now": datetime.now(timezone.utc),
                },
            )


class BYOKOverride:
    """Decides whether a user's AI calls bypass platform quotas."""

    def __init__(
        self,
        subscriptions: Optional[SubscriptionManager] = None,
        key_store: Optional[ProviderKeyStore] = None,
        encryptor: Optional[KeyEncryptor] = None,
    ):
        self._subscriptions = subscriptions or get_subscription_manager()
        self._key_store = key_store or SqlProviderKeyStore()
        self._encryptor = encryptor or KeyEncryptor()

    async def should_use_user_keys(self, user_id: str) -> bool:
        """True iff the user is on the byok tier with an active subscription."""
        try:
            subscription = await self._subscriptions.get_current_subscription(user_id)
            if subscription is None or subscription.tier != Tier.BYOK:
                return False
            return self._subscriptions.derive_status(subscription) == SubscriptionStatus.ACTIVE
        except Exception as e:
            logger.error(f"BYOK lookup failed for user {user_id}, using platform keys: {e}")
            return False

    async def get_user_api_keys(self, user_id: str) -> ProviderKeys:
        """The user's stored credentials (empty when none or unreadable)."""
        encrypted = await self._key_store.get(user_id)
        if not encrypted:
            return ProviderKeys()
        try:
            return self._encryptor.decrypt(encrypted)
        except (InvalidToken, ValueError) as e:
            logger.error(f"Stored provider keys for user {user_id} cannot be decrypted: {e!r}")
            return ProviderKeys()

    async def set_user_api_keys(self, user_id: str, keys: ProviderKeys) -> None:
        """Replace the user's stored credentials."""
        await self._key_store.put(user_id, self._encryptor.encrypt(keys))
        logger.info(f"Stored provider keys for user {user_id}: {keys.configured_providers}")

    async def has_required_keys(self, user_id: str, provider: str) -> bool:
        """Check if the user has credentials for a provider."""
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider}")
        keys = await self.get_user_api_keys(user_id)
        return keys.has(provider)

    async def require_provider_key(self, user_id: str, provider: str) -> str:
        """
        Get the user's key for a provider.

        Raises:
            MissingProviderKeyError: if no key is configured for the provider
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider}")
        keys = await self.get_user_api_keys(user_id)
        value = getattr(keys, provider)
        if not value:
            raise MissingProviderKeyError(user_id, provider)
        return value


# Module-level instance for convenience
_byok_override: Optional[BYOKOverride] = None


def get_byok_override() -> BYOKOverride:
    """Get or create BYOKOverride instance."""
    global _byok_override
    if _byok_override is None:
        _byok_override = BYOKOverride()
    return _byok_override


__all__ = [
    "BYOKOverride",
    "KeyEncryptor",
    "ProviderKeyStore",
    "SqlProviderKeyStore",
    "SUPPORTED_PROVIDERS",
    "get_byok_override",
]
