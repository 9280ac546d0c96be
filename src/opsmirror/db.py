"""Mirror database provisioning and the asyncpg pool behind the Postgres stores."""

from __future__ import annotations

import logging
import os
import re
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_SCHEMA_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_DEFAULT_CREDENTIAL = "opsmirror"


def _ssl_mode(value: str | None) -> str | None:
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in _SSL_MODES:
        logger.warning("Ignoring unknown sslmode %r", value)
        return None
    return mode


def schema_search_path(schema: str | None) -> str | None:
    """``<schema>,public`` for a schema-scoped mirror, or None for the default path.

    Raises:
        ValueError: If *schema* is not a plain SQL identifier.
    """
    name = (schema or "").strip()
    if not name:
        return None
    if _SCHEMA_NAME.fullmatch(name) is None:
        raise ValueError(f"Invalid schema name: {schema!r}")
    return f"{name},public"


class Database:
    """Owns the mirror database: creates it on first start and holds the pool."""

    def __init__(
        self,
        db_name: str,
        schema: str | None = None,
        host: str = "localhost",
        port: int = 5432,
        user: str = _DEFAULT_CREDENTIAL,
        password: str = _DEFAULT_CREDENTIAL,
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.search_path = schema_search_path(schema)
        self.schema = schema.strip() if self.search_path and schema else None
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str, schema: str | None = None) -> Database:
        """Read the server location from ``DATABASE_URL`` or ``POSTGRES_*``.

        Only the server part of ``DATABASE_URL`` is used; the database name
        always comes from *db_name*.
        """
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            parsed = urlparse(database_url)
            return cls(
                db_name,
                schema,
                host=parsed.hostname or "localhost",
                port=parsed.port or 5432,
                user=parsed.username or _DEFAULT_CREDENTIAL,
                password=parsed.password or _DEFAULT_CREDENTIAL,
                ssl=_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
            )
        return cls(
            db_name,
            schema,
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            user=os.environ.get("POSTGRES_USER", _DEFAULT_CREDENTIAL),
            password=os.environ.get("POSTGRES_PASSWORD", _DEFAULT_CREDENTIAL),
            ssl=_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        )

    @property
    def url(self) -> str:
        """Connection URL handed to the alembic runner."""
        credentials = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{credentials}@{self.host}:{self.port}/{self.db_name}"
        return url if self.ssl is None else f"{url}?sslmode={self.ssl}"

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def provision(self) -> None:
        """Create the mirror database through the ``postgres`` maintenance database."""
        conn = await asyncpg.connect(**self._connect_kwargs("postgres"))
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.db_name):
                logger.debug("Mirror database %s already exists", self.db_name)
                return
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created mirror database %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        kwargs = self._connect_kwargs(self.db_name)
        if self.search_path is not None:
            kwargs["server_settings"] = {"search_path": self.search_path}
        self.pool = await asyncpg.create_pool(
            min_size=self.min_pool_size, max_size=self.max_pool_size, **kwargs
        )
        logger.info("Connected to mirror database %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Closed pool for mirror database %s", self.db_name)
