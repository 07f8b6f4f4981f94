from __future__ import annotations

import logging
from datetime import datetime, timezone

from dashboard.storage import PostgresStore
from dashboard.vault import CredentialVault
from vinhistory.data_models import ScraperCredentials

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CredentialService:
    """Encrypted-at-rest scraper logins and reusable session cookies, one record per user."""

    def __init__(self, store: PostgresStore, vault: CredentialVault) -> None:
        self.store = store
        self.vault = vault

    async def store_credentials(self, user_id: int, username: str, password: str) -> None:
        await self.store.upsert_credential_record(
            user_id,
            encrypted_username=self.vault.encrypt(username),
            encrypted_password=self.vault.encrypt(password),
        )
        logger.info("Stored scraper credentials for user %s", user_id)

    async def get_credentials(self, user_id: int) -> ScraperCredentials | None:
        record = await self.store.get_credential_record(user_id)
        if record is None or not record.get("is_active", True):
            return None
        return ScraperCredentials(
            username=self.vault.decrypt(record["encrypted_username"]),
            password=self.vault.decrypt(record["encrypted_password"]),
        )

    async def get_username(self, user_id: int) -> str | None:
        record = await self.store.get_credential_record(user_id)
        if record is None:
            return None
        return self.vault.decrypt(record["encrypted_username"])

    async def update_session_cookie(self, user_id: int, cookie: str, expires_at: datetime) -> bool:
        updated = await self.store.update_session_cookie(
            user_id,
            encrypted_cookie=self.vault.encrypt(cookie),
            expires_at=_as_utc(expires_at),
        )
        if not updated:
            logger.warning("No credential record for user %s; session cookie not stored", user_id)
        return updated

    async def get_valid_session_cookie(self, user_id: int, now: datetime | None = None) -> str | None:
        record = await self.store.get_credential_record(user_id)
        if record is None or not record.get("is_active", True):
            return None
        blob = record.get("encrypted_session_cookie")
        expires_at = record.get("expires_at")
        if not blob or expires_at is None:
            return None
        now = _as_utc(now or datetime.now(timezone.utc))
        if _as_utc(expires_at) <= now:
            return None
        return self.vault.decrypt(blob)
