"""
決済アダプタ — 認証情報ストア

プロバイダの認証情報は payment_provider_config に AES-256-GCM で暗号化して保存する。
保存形式: base64( iv (12 bytes) | authTag (16 bytes) | ciphertext )

DB に設定行がなければ環境変数 (STRIPE_SECRET_KEY など) にフォールバックする。
設定行があって無効化されている場合は、環境変数があっても未設定扱い。
"""

import base64
import json
import logging
import os
from datetime import datetime, timezone
from uuid import uuid4

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..errors import EncryptionNotConfigured
from .types import PaymentProvider

logger = logging.getLogger(__name__)

IV_LENGTH = 12
AUTH_TAG_LENGTH = 16


class StripeCredentials(BaseModel):
    secret_key: str
    webhook_secret: str


class PayPalCredentials(BaseModel):
    client_id: str
    client_secret: str
    webhook_id: str | None = None
    mode: str = "sandbox"


CREDENTIAL_MODELS = {
    PaymentProvider.STRIPE: StripeCredentials,
    PaymentProvider.PAYPAL: PayPalCredentials,
}


# ── 暗号化 ───────────────────────────────────────


def _encryption_key(encryption_key: str | None) -> bytes:
    if not encryption_key:
        raise EncryptionNotConfigured()
    key = base64.b64decode(encryption_key)
    if len(key) != 32:
        raise ValueError("ENCRYPTION_KEY must be 32 bytes (256 bits) in base64")
    return key


def encrypt(plaintext: str, encryption_key: str | None) -> str:
    key = _encryption_key(encryption_key)
    iv = os.urandom(IV_LENGTH)
    # AESGCM は ciphertext | tag の順で返す
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt(encrypted: str, encryption_key: str | None) -> str:
    key = _encryption_key(encryption_key)
    combined = base64.b64decode(encrypted)
    iv = combined[:IV_LENGTH]
    tag = combined[IV_LENGTH:IV_LENGTH + AUTH_TAG_LENGTH]
    ciphertext = combined[IV_LENGTH + AUTH_TAG_LENGTH:]
    return AESGCM(key).decrypt(iv, ciphertext + tag, None).decode("utf-8")


def is_encryption_configured(encryption_key: str | None) -> bool:
    try:
        _encryption_key(encryption_key)
    except (EncryptionNotConfigured, ValueError):
        return False
    return True


# ── ストア ───────────────────────────────────────


class ProviderCredentialStore:
    def __init__(self, session_factory: sessionmaker, settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    async def load(self, provider: PaymentProvider) -> BaseModel | None:
        """復号済みの認証情報を返す。未設定・無効・復号失敗なら None。"""
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT is_enabled, credentials
                    FROM payment_provider_config
                    WHERE provider = :provider
                """),
                {"provider": provider.value},
            )
            row = result.fetchone()

        if row is None:
            return self._from_env(provider)
        if not row.is_enabled or not row.credentials:
            return None

        try:
            data = json.loads(decrypt(row.credentials, self.settings.encryption_key))
            return CREDENTIAL_MODELS[provider](**data)
        except (InvalidTag, ValueError, EncryptionNotConfigured):
            logger.error("Failed to decrypt credentials for %s", provider.value)
            return None

    def _from_env(self, provider: PaymentProvider) -> BaseModel | None:
        s = self.settings
        if provider is PaymentProvider.STRIPE:
            if s.stripe_secret_key and s.stripe_webhook_secret:
                return StripeCredentials(
                    secret_key=s.stripe_secret_key,
                    webhook_secret=s.stripe_webhook_secret,
                )
            return None
        if provider is PaymentProvider.PAYPAL:
            if s.paypal_client_id and s.paypal_client_secret:
                return PayPalCredentials(
                    client_id=s.paypal_client_id,
                    client_secret=s.paypal_client_secret,
                    webhook_id=s.paypal_webhook_id,
                    mode=s.paypal_mode,
                )
            return None
        raise ValueError(f"Unknown payment provider: {provider}")

    async def save(
        self,
        provider: PaymentProvider,
        credentials: BaseModel,
        is_enabled: bool = True,
    ) -> None:
        """認証情報を暗号化して保存する (既存行があれば上書き)。"""
        encrypted = encrypt(credentials.model_dump_json(), self.settings.encryption_key)
        now = datetime.now(timezone.utc)

        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT id FROM payment_provider_config WHERE provider = :provider"),
                {"provider": provider.value},
            )
            existing = result.fetchone()
            if existing:
                await session.execute(
                    text("""
                        UPDATE payment_provider_config
                        SET credentials = :credentials, is_enabled = :is_enabled,
                            date_updated = :now
                        WHERE id = :id
                    """),
                    {
                        "credentials": encrypted,
                        "is_enabled": is_enabled,
                        "now": now,
                        "id": existing.id,
                    },
                )
            else:
                await session.execute(
                    text("""
                        INSERT INTO payment_provider_config
                            (id, provider, is_enabled, credentials, date_created, date_updated)
                        VALUES
                            (:id, :provider, :is_enabled, :credentials, :now, :now)
                    """),
                    {
                        "id": str(uuid4()),
                        "provider": provider.value,
                        "is_enabled": is_enabled,
                        "credentials": encrypted,
                        "now": now,
                    },
                )
            await session.commit()
        logger.info("Saved credentials for %s (enabled=%s)", provider.value, is_enabled)

    async def status(self, provider: PaymentProvider) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT is_enabled, credentials
                    FROM payment_provider_config
                    WHERE provider = :provider
                """),
                {"provider": provider.value},
            )
            row = result.fetchone()
        if row is None:
            configured = self._from_env(provider) is not None
            return {"isConfigured": configured, "isEnabled": configured}
        return {"isConfigured": bool(row.credentials), "isEnabled": bool(row.is_enabled)}
