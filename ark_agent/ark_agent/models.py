"""
SQLAlchemy models for the ark agent store.

Key design decisions:
- One table per namespace (config, credentials, cache) so keys can never
  collide across namespaces
- Config and cache values are stored as JSON text
- Cache expiry is an EPOCH float compared on read; rows are never swept
"""

from typing import Optional

from sqlalchemy import Float, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ConfigEntry(Base):
    """Agent configuration key-value storage."""

    __tablename__ = "config_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON string

    def __repr__(self) -> str:
        return f"<ConfigEntry(key={self.key})>"


class StoredCredential(Base):
    """
    Cloud credentials for one profile.

    Note: secrets are stored in plain text; encryption at rest is not provided.
    """

    __tablename__ = "credentials"

    profile: Mapped[str] = mapped_column(String(255), primary_key=True)
    access_key_id: Mapped[str] = mapped_column(Text, nullable=False)
    secret_access_key: Mapped[str] = mapped_column(Text, nullable=False)
    session_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    region: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    # ISO 8601 timestamp, NULL for long-lived credentials
    expiration: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<StoredCredential(profile={self.profile}, region={self.region})>"


class CacheEntry(Base):
    """Cached JSON value with an absolute expiry time."""

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON string
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<CacheEntry(key={self.key}, expires_at={self.expires_at})>"
