"""Key-value state store backed by PostgreSQL JSONB.

Provides async get/set/delete on the ``state`` table. The realtime dispatcher
uses it as the cross-context broadcast channel: every process sharing the
database sees the same keys.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class StatePool(Protocol):
    """The subset of an asyncpg pool (or ``hearth.db.Database``) used here."""

    async def fetchval(self, query: str, *args: Any) -> Any: ...

    async def execute(self, query: str, *args: Any) -> str: ...


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered.  If the stored JSONB was double-encoded (a JSON string
    containing JSON text), a second pass is applied.
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


async def state_get(pool: StatePool, key: str) -> Any | None:
    """Return the JSONB value for *key*, or ``None`` if the key does not exist."""
    row = await pool.fetchval("SELECT value FROM state WHERE key = $1", key)
    if row is None:
        return None
    return decode_jsonb(row)


async def state_set(pool: StatePool, key: str, value: Any) -> int:
    """Upsert *key* with *value* (any JSON-serialisable type).

    Returns:
        The new version number for the row after the upsert.
    """
    json_value = json.dumps(value)
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
        json_value,
    )
    return new_version


async def state_delete(pool: StatePool, key: str) -> None:
    """Delete *key*; a missing key is a no-op."""
    await pool.execute("DELETE FROM state WHERE key = $1", key)
