"""Versioned key-value state backed by PostgreSQL JSONB.

Singleton sync records (the chat-list cursor pair and lock, the history
backfill status) live in the ``state`` table. Every write bumps ``version`` so
concurrent sync passes can coordinate through compare-and-set.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned by asyncpg as text.

    A value that was double-encoded on write (a JSON string containing JSON
    text) gets a second decode pass.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class CASConflictError(Exception):
    """Raised by state_compare_and_set when the expected version does not match."""

    def __init__(
        self,
        key: str,
        expected_version: int,
        actual_version: int | None,
    ) -> None:
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"CAS conflict on key {key!r}: expected version {expected_version}, "
            f"got {actual_version!r}"
        )


async def state_get_versioned(pool: asyncpg.Pool, key: str) -> tuple[Any, int] | None:
    """Return ``(value, version)`` for *key*, or ``None`` if absent."""
    row = await pool.fetchrow("SELECT value, version FROM state WHERE key = $1", key)
    if row is None:
        return None
    return decode_jsonb(row["value"]), row["version"]


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Unconditionally upsert *key*; returns the new version."""
    new_version: int = await pool.fetchval(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now(),
                version = state.version + 1
        RETURNING version
        """,
        key,
        json.dumps(value),
    )
    return new_version


async def state_setdefault(pool: asyncpg.Pool, key: str, value: Any) -> tuple[Any, int]:
    """Insert *value* at version 1 unless *key* exists; return what is stored."""
    await pool.execute(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO NOTHING
        """,
        key,
        json.dumps(value),
    )
    stored = await state_get_versioned(pool, key)
    if stored is None:
        raise RuntimeError(f"state key {key!r} vanished after insert")
    return stored


async def state_compare_and_set(
    pool: asyncpg.Pool,
    key: str,
    expected_version: int,
    new_value: Any,
) -> int:
    """Update *key* only if its version still equals *expected_version*.

    Of two writers that read the same version, exactly one succeeds; the
    other gets :exc:`CASConflictError`.

    Raises:
        CASConflictError: If the stored version differs or the key is absent.
    """
    row = await pool.fetchrow(
        """
        UPDATE state
        SET value = $3::jsonb,
            updated_at = now(),
            version = version + 1
        WHERE key = $1 AND version = $2
        RETURNING version
        """,
        key,
        expected_version,
        json.dumps(new_value),
    )
    if row is not None:
        return row["version"]

    actual = await pool.fetchval("SELECT version FROM state WHERE key = $1", key)
    raise CASConflictError(
        key=key,
        expected_version=expected_version,
        actual_version=actual,
    )
