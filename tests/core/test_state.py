"""Tests for hearth.core.state against a mocked pool."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from hearth.core.state import decode_jsonb, state_delete, state_get, state_set
from hearth.testing import InMemoryStatePool

pytestmark = pytest.mark.unit


class TestDecodeJsonb:
    def test_passthrough_for_decoded_values(self):
        assert decode_jsonb({"a": 1}) == {"a": 1}
        assert decode_jsonb(None) is None

    def test_decodes_text(self):
        assert decode_jsonb('{"changed_at": "2024-07-01T00:00:00+00:00"}') == {
            "changed_at": "2024-07-01T00:00:00+00:00"
        }

    def test_double_encoded(self):
        assert decode_jsonb(json.dumps(json.dumps({"a": 1}))) == {"a": 1}

    def test_plain_json_string_stays_string(self):
        assert decode_jsonb(json.dumps("hello")) == "hello"


class TestStateFunctions:
    async def test_round_trip_with_versions(self):
        pool = InMemoryStatePool()

        assert await state_get(pool, "k") is None
        assert await state_set(pool, "k", {"n": 1}) == 1
        assert await state_set(pool, "k", {"n": 2}) == 2
        assert await state_get(pool, "k") == {"n": 2}

        await state_delete(pool, "k")
        assert await state_get(pool, "k") is None

    async def test_delete_missing_key_is_noop(self):
        pool = InMemoryStatePool()
        await state_delete(pool, "missing")

    async def test_set_sends_json_text_with_jsonb_cast(self):
        pool = MagicMock()
        pool.fetchval = AsyncMock(return_value=3)

        version = await state_set(pool, "hearth:dispatcher:refresh", {"changed_at": "t"})

        assert version == 3
        query, key, value = pool.fetchval.call_args.args
        assert "$2::jsonb" in query
        assert "ON CONFLICT (key)" in query
        assert key == "hearth:dispatcher:refresh"
        assert json.loads(value) == {"changed_at": "t"}
