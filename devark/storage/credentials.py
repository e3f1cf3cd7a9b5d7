"""Secret store for provider API keys.

Keys are read by the provider registry only; nothing here logs key material.
"""

from __future__ import annotations

import logging
from typing import cast

from sqlalchemy import select, update

from .database import Base, engine, session_scope
from .models import ProviderSecret

logger = logging.getLogger("devark.storage")


def init_db() -> None:
    """Create tables if they do not already exist."""
    Base.metadata.create_all(bind=engine)


def upsert_api_key(provider_id: str, api_key: str) -> None:
    """Insert or update the API key for a provider."""
    if not api_key:
        raise ValueError("API key must not be empty")
    with session_scope() as session:
        existing = session.scalar(select(ProviderSecret).where(ProviderSecret.provider_id == provider_id))
        if existing:
            session.execute(
                update(ProviderSecret).where(ProviderSecret.id == existing.id).values(api_key=api_key)
            )
        else:
            session.add(ProviderSecret(provider_id=provider_id, api_key=api_key))
    logger.info("Stored provider API key", extra={"event": "secret_stored", "provider_id": provider_id})


def get_api_key(provider_id: str) -> str | None:
    """Return the stored API key for the given provider, if any."""
    with session_scope() as session:
        result = session.scalar(
            select(ProviderSecret.api_key).where(ProviderSecret.provider_id == provider_id)
        )
        return cast(str | None, result)


def delete_api_key(provider_id: str) -> bool:
    """Delete a stored API key if present."""
    with session_scope() as session:
        secret = session.scalar(select(ProviderSecret).where(ProviderSecret.provider_id == provider_id))
        if not secret:
            return False
        session.delete(secret)
    logger.info("Deleted provider API key", extra={"event": "secret_deleted", "provider_id": provider_id})
    return True


def list_provider_ids() -> list[str]:
    with session_scope() as session:
        rows = session.scalars(select(ProviderSecret.provider_id).order_by(ProviderSecret.provider_id)).all()
        return [cast(str, row) for row in rows]


class SecretStore:
    """Object facade over this module, handed to the provider registry."""

    def get_api_key(self, provider_id: str) -> str | None:
        return get_api_key(provider_id)

    def set_api_key(self, provider_id: str, api_key: str) -> None:
        upsert_api_key(provider_id, api_key)

    def delete_api_key(self, provider_id: str) -> bool:
        return delete_api_key(provider_id)

    def has_api_key(self, provider_id: str) -> bool:
        return bool(get_api_key(provider_id))

    def list_provider_ids(self) -> list[str]:
        return list_provider_ids()
