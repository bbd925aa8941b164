"""
Embedded SQLAlchemy store for the ark agent.
Holds three independent namespaces: config, credentials and cache entries.
"""

import json
import os
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import create_engine, delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from ark_agent.errors import NotFoundError, PersistenceError
from ark_agent.logging import get_logger
from ark_agent.models import CacheEntry, ConfigEntry, StoredCredential
from ark_agent.schemas import Credential

logger = get_logger("Storage")


class Storage:
    """
    Central SQLAlchemy interface for the agent's persistent state.

    Every public method runs in its own short transaction, so a reader never
    observes a partially written entry and no cursor outlives a call.

    Cache entries are expired lazily: get_cache() treats an entry whose
    expires_at has passed as absent, but the row itself stays on disk.
    """

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        """
        Open (and migrate) the SQLite database at db_path.

        Args:
            db_path (str): Path to SQLite database
            clock (callable): EPOCH time source used for cache expiry

        Raises:
            PersistenceError: If the database cannot be opened or migrated
        """
        self.db_path = db_path
        self.clock = clock
        logger.info(f"Opening SQLite database at {self.db_path}")

        parent_dir = os.path.dirname(self.db_path)
        try:
            if parent_dir:
                os.makedirs(parent_dir, mode=0o700, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"create database directory: {e}") from e

        # NullPool: a fresh connection per session, safe with asyncio.to_thread()
        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            poolclass=NullPool,
            connect_args={
                "check_same_thread": False,
                "timeout": 1,  # seconds to wait for a write lock
            },
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        self._init_db()

    def _init_db(self):
        """
        Set SQLite pragmas and bring the schema to the latest Alembic revision.
        """
        from alembic import command
        from alembic.config import Config

        alembic_cfg = Config()
        alembic_cfg.set_main_option(
            "script_location", os.path.join(os.path.dirname(__file__), "migrations")
        )

        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.commit()

            # Share our connection with env.py instead of passing a URL
            with self.engine.begin() as connection:
                alembic_cfg.attributes["connection"] = connection
                command.upgrade(alembic_cfg, "head")
        except SQLAlchemyError as e:
            logger.error(f"DB error during database initialization: {e}")
            raise PersistenceError(f"open database {self.db_path}: {e}") from e

        try:
            os.chmod(self.db_path, 0o600)
        except OSError:
            logger.warning(f"Could not restrict permissions on {self.db_path}")

        logger.info("Database initialized successfully")

    @contextmanager
    def _session(self):
        """Yield an ORM session, translating driver failures to PersistenceError."""
        try:
            with self.SessionLocal() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Store operation failed: {e}")
            raise PersistenceError(str(e)) from e

    @staticmethod
    def _encode(value: Any) -> str:
        try:
            return json.dumps(value)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"value is not JSON serializable: {e}") from e

    # --- Config namespace ---

    def set_config(self, key: str, value: Any):
        """Store a JSON-serializable configuration value."""
        data = self._encode(value)
        with self._session() as session:
            session.merge(ConfigEntry(key=key, value=data))
            session.commit()

    def get_config(self, key: str) -> Any:
        """
        Retrieve a configuration value.

        Raises:
            NotFoundError: If the key is not set
        """
        with self._session() as session:
            entry = session.get(ConfigEntry, key)
            if entry is None:
                raise NotFoundError(f"key not found: {key}")
            return json.loads(entry.value)

    def delete_config(self, key: str):
        """Remove a configuration value. Missing keys are ignored."""
        with self._session() as session:
            session.execute(delete(ConfigEntry).where(ConfigEntry.key == key))
            session.commit()

    def list_config(self) -> dict:
        """Return every configuration value keyed by name."""
        with self._session() as session:
            rows = session.execute(select(ConfigEntry)).scalars().all()
            return {row.key: json.loads(row.value) for row in rows}

    # --- Credentials namespace ---

    def set_credential(self, profile: str, credential: Credential):
        """
        Store credentials for a profile, replacing any previous entry entirely.
        """
        expiration = credential.expiration.isoformat() if credential.expiration else None
        with self._session() as session:
            session.merge(
                StoredCredential(
                    profile=profile,
                    access_key_id=credential.access_key_id,
                    secret_access_key=credential.secret_access_key,
                    session_token=credential.session_token,
                    region=credential.region,
                    expiration=expiration,
                )
            )
            session.commit()

    @staticmethod
    def _to_credential(row: StoredCredential) -> Credential:
        return Credential(
            access_key_id=row.access_key_id,
            secret_access_key=row.secret_access_key,
            session_token=row.session_token,
            region=row.region,
            expiration=datetime.fromisoformat(row.expiration) if row.expiration else None,
        )

    def get_credential(self, profile: str) -> Credential:
        """
        Retrieve credentials for a profile.

        Raises:
            NotFoundError: If no credentials are stored for the profile
        """
        with self._session() as session:
            row = session.get(StoredCredential, profile)
            if row is None:
                raise NotFoundError(f"profile not found: {profile}")
            return self._to_credential(row)

    def list_credentials(self) -> dict[str, Credential]:
        """Return all stored credentials keyed by profile (order unspecified)."""
        with self._session() as session:
            rows = session.execute(select(StoredCredential)).scalars().all()
            return {row.profile: self._to_credential(row) for row in rows}

    def delete_credential(self, profile: str):
        """
        Remove credentials for a profile.
        Succeeds whether or not the profile exists; callers check first.
        """
        with self._session() as session:
            session.execute(
                delete(StoredCredential).where(StoredCredential.profile == profile)
            )
            session.commit()

    # --- Cache namespace ---

    def set_cache(self, key: str, value: Any, ttl: float):
        """
        Store a cache entry that expires ttl seconds from now.
        The whole entry is rewritten; a ttl <= 0 yields an already-expired entry.
        """
        data = self._encode(value)
        expires_at = self.clock() + ttl
        with self._session() as session:
            session.merge(CacheEntry(key=key, value=data, expires_at=expires_at))
            session.commit()

    def get_cache(self, key: str) -> Any:
        """
        Retrieve a cached value.

        Raises:
            NotFoundError: If the key is absent or the entry has expired
        """
        with self._session() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                raise NotFoundError(f"key not found: {key}")
            if self.clock() >= entry.expires_at:
                raise NotFoundError(f"cache entry expired: {key}")
            return json.loads(entry.value)

    def delete_cache(self, key: str):
        """Remove a cache entry. Missing keys are ignored."""
        with self._session() as session:
            session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            session.commit()

    def list_cache(self) -> list[str]:
        """Return the keys of all unexpired cache entries."""
        now = self.clock()
        with self._session() as session:
            return list(
                session.execute(
                    select(CacheEntry.key).where(CacheEntry.expires_at > now)
                ).scalars()
            )

    def close(self):
        """Dispose of the engine and all pooled connections."""
        self.engine.dispose()
        logger.debug(f"Closed database at {self.db_path}")
