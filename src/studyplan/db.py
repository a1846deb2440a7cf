"""Connection settings and pool lifecycle for the planner's Postgres database.

Host and credentials come from the environment (``DATABASE_URL`` or the
``POSTGRES_*`` variables); the database name and pool sizes come from the
``[planner.db]`` section of ``studyplan.toml``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, quote, urlsplit

import asyncpg

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})


def _sslmode(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in SSL_MODES:
        logger.warning("Ignoring unknown sslmode %r", value)
        return None
    return mode


@dataclass(frozen=True)
class DatabaseSettings:
    """Where the planner database lives and how to reach it."""

    name: str
    host: str = "localhost"
    port: int = 5432
    user: str = "studyplan"
    password: str = "studyplan"
    sslmode: str | None = None

    @classmethod
    def from_env(cls, name: str, environ: Mapping[str, str] | None = None) -> DatabaseSettings:
        """Build settings for database *name* from the environment.

        ``DATABASE_URL`` wins when set; its path (database) is ignored because
        the name always comes from configuration.
        """
        env = os.environ if environ is None else environ
        url = env.get("DATABASE_URL")
        if url:
            parts = urlsplit(url)
            return cls(
                name=name,
                host=parts.hostname or "localhost",
                port=parts.port or 5432,
                user=parts.username or "studyplan",
                password=parts.password or "studyplan",
                sslmode=_sslmode(parse_qs(parts.query).get("sslmode", [None])[0]),
            )
        return cls(
            name=name,
            host=env.get("POSTGRES_HOST", "localhost"),
            port=int(env.get("POSTGRES_PORT", "5432")),
            user=env.get("POSTGRES_USER", "studyplan"),
            password=env.get("POSTGRES_PASSWORD", "studyplan"),
            sslmode=_sslmode(env.get("POSTGRES_SSLMODE")),
        )

    @property
    def dsn(self) -> str:
        """libpq URL for this database, as alembic expects it."""
        auth = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{auth}@{self.host}:{self.port}/{quote(self.name, safe='')}"
        return f"{url}?sslmode={self.sslmode}" if self.sslmode else url

    def connect_kwargs(self, database: str | None = None) -> dict[str, Any]:
        """Keyword arguments for ``asyncpg.connect`` / ``asyncpg.create_pool``."""
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database or self.name,
        }
        if self.sslmode is not None:
            kwargs["ssl"] = self.sslmode
        return kwargs


async def ensure_database(settings: DatabaseSettings) -> bool:
    """Create the database unless it exists; return True when it was created.

    Runs against the ``postgres`` maintenance database, since the target may
    not exist yet.
    """
    conn = await asyncpg.connect(**settings.connect_kwargs("postgres"))
    try:
        if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", settings.name):
            return False
        # Identifiers cannot be bound as query parameters.
        quoted = settings.name.replace('"', '""')
        await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
    finally:
        await conn.close()
    logger.info("Created database %s on %s:%d", settings.name, settings.host, settings.port)
    return True


@asynccontextmanager
async def open_pool(
    settings: DatabaseSettings, *, min_size: int = 2, max_size: int = 10
) -> AsyncIterator[asyncpg.Pool]:
    """Yield a pool on the planner database and close it on exit."""
    pool = await asyncpg.create_pool(
        **settings.connect_kwargs(), min_size=min_size, max_size=max_size
    )
    logger.debug("Pool open on %s (min=%d, max=%d)", settings.name, min_size, max_size)
    try:
        yield pool
    finally:
        await pool.close()
