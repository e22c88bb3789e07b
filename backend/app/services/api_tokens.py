from __future__ import annotations

import logging
from datetime import datetime, timezone

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.api_token import UserApiToken

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = frozenset({"openai", "anthropic"})
MIN_TOKEN_LENGTH = 20


class ApiTokenError(Exception):
    """Base error for private API key handling."""


class ApiTokenConfigError(ApiTokenError):
    pass


def _fernet() -> Fernet:
    key = settings.API_TOKEN_ENCRYPTION_KEY
    if not key:
        raise ApiTokenConfigError("API_TOKEN_ENCRYPTION_KEY is not configured")
    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except ValueError as exc:
        raise ApiTokenConfigError("API_TOKEN_ENCRYPTION_KEY is not a valid Fernet key") from exc


def encrypt_token(plaintext: str) -> str:
    return _fernet().encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: str) -> str:
    try:
        return _fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise ApiTokenError("Stored API key could not be decrypted") from exc


def mask_token(plaintext: str) -> str:
    if len(plaintext) <= 8:
        return "*" * len(plaintext)
    return f"{plaintext[:4]}...{plaintext[-4:]}"


def normalize_provider(provider: str) -> str:
    normalized = (provider or "").strip().lower()
    if normalized not in SUPPORTED_PROVIDERS:
        raise ApiTokenError(f"Unsupported provider: {provider}")
    return normalized


class ApiTokensService:
    """Users' own provider keys. A stored key lets its owner skip metering for that provider family."""

    def __init__(self, db: Session):
        self.db = db

    def list_tokens(self, user_id: int) -> list[UserApiToken]:
        return list(
            self.db.execute(
                select(UserApiToken)
                .where(UserApiToken.user_id == user_id)
                .order_by(UserApiToken.provider.asc())
            )
            .scalars()
            .all()
        )

    def get_token(self, user_id: int, provider: str) -> UserApiToken | None:
        return self.db.execute(
            select(UserApiToken).where(
                UserApiToken.user_id == user_id,
                UserApiToken.provider == normalize_provider(provider),
            )
        ).scalars().first()

    def set_token(
        self,
        user_id: int,
        provider: str,
        token: str,
        *,
        display_name: str | None = None,
    ) -> UserApiToken:
        provider = normalize_provider(provider)
        plaintext = (token or "").strip()
        if len(plaintext) < MIN_TOKEN_LENGTH:
            raise ApiTokenError("API key looks too short")

        record = self.get_token(user_id, provider)
        if record is None:
            record = UserApiToken(user_id=user_id, provider=provider)
            self.db.add(record)
        record.token = encrypt_token(plaintext)
        record.display_name = display_name or mask_token(plaintext)
        record.is_active = True
        self.db.commit()
        self.db.refresh(record)
        logger.info("api_tokens.saved", extra={"user_id": user_id, "provider": provider})
        return record

    def delete_token(self, user_id: int, provider: str) -> bool:
        record = self.get_token(user_id, provider)
        if record is None:
            return False
        self.db.delete(record)
        self.db.commit()
        logger.info("api_tokens.deleted", extra={"user_id": user_id, "provider": record.provider})
        return True

    def get_active_key(self, user_id: int, provider: str) -> str | None:
        """Decrypted key for the provider family, or None when the user has none."""
        if (provider or "").strip().lower() not in SUPPORTED_PROVIDERS:
            return None
        record = self.get_token(user_id, provider)
        if record is None or not record.is_active:
            return None
        return decrypt_token(record.token)

    def mark_used(self, user_id: int, provider: str) -> None:
        record = self.get_token(user_id, provider)
        if record is None:
            return
        record.last_used_at = datetime.now(timezone.utc)
        self.db.commit()
