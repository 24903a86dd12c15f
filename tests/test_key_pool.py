"""Tests for the Key Rotation Pool (in-memory SQLite)."""

from __future__ import annotations

import json

import pytest
from sqlalchemy import select

from genai_gateway.core.exceptions import NoAvailableKeyError, NotFoundError, StateError, ValidationError
from genai_gateway.gateway.key_pool import KeyRotationPool, validate_key_format
from genai_gateway.gateway.types import RotationStrategy
from genai_gateway.models.credential import ApiCredential


def make_api_key(tag: str) -> str:
    """A well-formed Gemini key (39 chars) ending in ``tag``."""
    return "AIzaSy" + tag.rjust(33, "x")


class TestKeyFormat:
    @pytest.mark.parametrize(
        "secret",
        [
            "AIza" + "a" * 31,
            "AIza" + "b" * 41,
            "AIzaSy_dash-and_underscore_0123456789",
        ],
    )
    def test_valid(self, secret):
        validate_key_format(secret)

    @pytest.mark.parametrize(
        "secret",
        [
            "",
            "AIza" + "a" * 30,  # too short
            "AIza" + "a" * 42,  # too long
            "BIza" + "a" * 35,  # wrong prefix
            "AIza" + "a" * 30 + "!",  # bad charset
            "sk-" + "a" * 40,
        ],
    )
    def test_invalid(self, secret):
        with pytest.raises(ValidationError):
            validate_key_format(secret)


class TestAddKeys:
    @pytest.mark.asyncio
    async def test_add_key_returns_masked_view(self, key_pool):
        view = await key_pool.add_key("demo", make_api_key("klmn"), priority=10)
        assert view.id is not None
        assert view.name == "demo"
        assert view.secret == "AIza...klmn"
        assert view.priority == 10
        assert view.is_active is True
        assert view.usage_count == 0

    @pytest.mark.asyncio
    async def test_secret_is_stored_encrypted(self, key_pool, session_factory, vault):
        secret = make_api_key("abcd")
        view = await key_pool.add_key("demo", secret)

        async with session_factory() as session:
            row = await session.get(ApiCredential, view.id)
        assert row.secret_ciphertext != secret
        assert secret not in row.secret_ciphertext
        assert vault.decrypt(row.secret_ciphertext) == secret

    @pytest.mark.asyncio
    async def test_default_priority(self, key_pool):
        view = await key_pool.add_key("demo", make_api_key("abcd"))
        assert view.priority == 100

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self, key_pool):
        with pytest.raises(ValidationError):
            await key_pool.add_key("bad", "not-a-gemini-key")
        assert await key_pool.list_keys() == []

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, key_pool):
        with pytest.raises(ValidationError):
            await key_pool.add_key("", make_api_key("abcd"))

    @pytest.mark.asyncio
    async def test_batch_add(self, key_pool):
        views = await key_pool.add_multiple_keys(
            [
                {"name": "one", "secret": make_api_key("0001"), "priority": 1},
                {"name": "two", "secret": make_api_key("0002"), "priority": 2},
            ]
        )
        assert [v.name for v in views] == ["one", "two"]
        assert len(await key_pool.list_keys()) == 2

    @pytest.mark.asyncio
    async def test_batch_add_is_all_or_nothing(self, key_pool):
        with pytest.raises(ValidationError):
            await key_pool.add_multiple_keys(
                [
                    {"name": "one", "secret": make_api_key("0001")},
                    {"name": "broken", "secret": "AIza-too-short"},
                ]
            )
        assert await key_pool.list_keys() == []


class TestRotation:
    @pytest.mark.asyncio
    async def test_empty_pool(self, key_pool):
        with pytest.raises(NoAvailableKeyError):
            await key_pool.get_next_key()

    @pytest.mark.asyncio
    async def test_no_available_key_is_state_error(self, key_pool):
        with pytest.raises(StateError):
            await key_pool.get_next_key(RotationStrategy.RANDOM)

    @pytest.mark.asyncio
    async def test_priority_strategy(self, key_pool):
        await key_pool.add_key("other", make_api_key("other"), priority=50)
        await key_pool.add_key("demo", make_api_key("demo"), priority=10)

        key = await key_pool.get_next_key(RotationStrategy.PRIORITY)
        assert key.name == "demo"
        assert key.secret == make_api_key("demo")

    @pytest.mark.asyncio
    async def test_priority_tie_prefers_newest(self, key_pool):
        await key_pool.add_key("older", make_api_key("0001"), priority=10)
        await key_pool.add_key("newer", make_api_key("0002"), priority=10)
        assert (await key_pool.get_next_key(RotationStrategy.PRIORITY)).name == "newer"

    @pytest.mark.asyncio
    async def test_inactive_keys_are_skipped(self, key_pool):
        demo = await key_pool.add_key("demo", make_api_key("demo"), priority=10)
        await key_pool.add_key("other", make_api_key("other"), priority=50)
        await key_pool.toggle_key_status(demo.id, False)

        assert (await key_pool.get_next_key()).name == "other"

    @pytest.mark.asyncio
    async def test_all_inactive(self, key_pool):
        demo = await key_pool.add_key("demo", make_api_key("demo"))
        await key_pool.toggle_key_status(demo.id, False)
        with pytest.raises(NoAvailableKeyError):
            await key_pool.get_next_key()

    @pytest.mark.asyncio
    async def test_round_robin_prefers_never_used_then_oldest_use(self, key_pool):
        a = await key_pool.add_key("a", make_api_key("000a"), priority=1)
        b = await key_pool.add_key("b", make_api_key("000b"), priority=2)

        first = await key_pool.get_next_key(RotationStrategy.ROUND_ROBIN)
        assert first.id == a.id  # both unused, priority decides
        await key_pool.record_key_usage(first.id, success=True)

        second = await key_pool.get_next_key(RotationStrategy.ROUND_ROBIN)
        assert second.id == b.id  # never used beats used
        await key_pool.record_key_usage(second.id, success=True)

        third = await key_pool.get_next_key(RotationStrategy.ROUND_ROBIN)
        assert third.id == a.id  # least recently used

    @pytest.mark.asyncio
    async def test_least_used(self, key_pool):
        a = await key_pool.add_key("a", make_api_key("000a"), priority=1)
        b = await key_pool.add_key("b", make_api_key("000b"), priority=2)
        await key_pool.record_key_usage(a.id, success=True)
        await key_pool.record_key_usage(a.id, success=False)

        assert (await key_pool.get_next_key(RotationStrategy.LEAST_USED)).id == b.id

    @pytest.mark.asyncio
    async def test_random_returns_active_key(self, key_pool):
        a = await key_pool.add_key("a", make_api_key("000a"))
        b = await key_pool.add_key("b", make_api_key("000b"))
        ids = {(await key_pool.get_next_key(RotationStrategy.RANDOM)).id for _ in range(10)}
        assert ids <= {a.id, b.id}

    @pytest.mark.asyncio
    async def test_strategy_accepts_string(self, key_pool):
        await key_pool.add_key("a", make_api_key("000a"))
        assert (await key_pool.get_next_key("round-robin")).name == "a"


class TestUsageRecording:
    @pytest.mark.asyncio
    async def test_counters(self, key_pool):
        view = await key_pool.add_key("demo", make_api_key("demo"))
        await key_pool.record_key_usage(view.id, success=True)
        await key_pool.record_key_usage(view.id, success=True)
        await key_pool.record_key_usage(view.id, success=False)

        key = await key_pool.get_key(view.id)
        assert key.usage_count == 3
        assert key.success_count == 2
        assert key.failure_count == 1
        assert key.usage_count == key.success_count + key.failure_count
        assert key.last_used_at is not None

    @pytest.mark.asyncio
    async def test_unknown_key_is_ignored(self, key_pool):
        await key_pool.record_key_usage(9999, success=True)


class TestManagement:
    @pytest.mark.asyncio
    async def test_list_keys_masks_and_orders(self, key_pool):
        await key_pool.add_key("low", make_api_key("0low"), priority=50)
        await key_pool.add_key("high", make_api_key("high"), priority=10)

        keys = await key_pool.list_keys()
        assert [k.name for k in keys] == ["high", "low"]
        assert keys[0].secret == "AIza...high"
        assert all("..." in k.secret for k in keys)

    @pytest.mark.asyncio
    async def test_get_key_is_masked(self, key_pool):
        view = await key_pool.add_key("demo", make_api_key("demo"))
        assert (await key_pool.get_key(view.id)).secret == "AIza...demo"

    @pytest.mark.asyncio
    async def test_get_unknown_key(self, key_pool):
        with pytest.raises(NotFoundError):
            await key_pool.get_key(42)

    @pytest.mark.asyncio
    async def test_update_key(self, key_pool):
        view = await key_pool.add_key("demo", make_api_key("demo"), priority=10)
        updated = await key_pool.update_key(view.id, name="renamed", secret=make_api_key("newk"), priority=5)
        assert updated.name == "renamed"
        assert updated.priority == 5
        assert updated.secret == "AIza...newk"
        assert (await key_pool.get_next_key()).secret == make_api_key("newk")

    @pytest.mark.asyncio
    async def test_update_rejects_bad_secret(self, key_pool):
        view = await key_pool.add_key("demo", make_api_key("demo"))
        with pytest.raises(ValidationError):
            await key_pool.update_key(view.id, secret="nope")

    @pytest.mark.asyncio
    async def test_update_unknown_key(self, key_pool):
        with pytest.raises(NotFoundError):
            await key_pool.update_key(42, name="x")

    @pytest.mark.asyncio
    async def test_delete_key(self, key_pool):
        view = await key_pool.add_key("demo", make_api_key("demo"))
        await key_pool.delete_key(view.id)
        assert await key_pool.list_keys() == []
        with pytest.raises(NotFoundError):
            await key_pool.delete_key(view.id)

    @pytest.mark.asyncio
    async def test_list_survives_undecryptable_row(self, key_pool, session_factory):
        view = await key_pool.add_key("demo", make_api_key("demo"))
        async with session_factory() as session:
            row = (await session.execute(select(ApiCredential).where(ApiCredential.id == view.id))).scalar_one()
            row.secret_ciphertext = "corrupted"
            await session.commit()

        keys = await key_pool.list_keys()
        assert keys[0].secret == "***"


class TestBackup:
    @pytest.mark.asyncio
    async def test_export_without_secrets(self, key_pool):
        await key_pool.add_key("demo", make_api_key("demo"))
        doc = json.loads(await key_pool.export_keys())

        assert doc["version"] == "1.0"
        assert "exported_at" in doc
        assert doc["key_count"] == 1
        assert "api_keys" not in doc

    @pytest.mark.asyncio
    async def test_export_import_round_trip(self, key_pool, session_factory, vault):
        await key_pool.add_key("demo", make_api_key("demo"), priority=10)
        await key_pool.add_key("other", make_api_key("other"), priority=50)
        exported = await key_pool.export_keys(include_secrets=True)

        target = KeyRotationPool(session_factory, vault)
        for key in await target.list_keys():
            await target.delete_key(key.id)

        imported = await target.import_keys(exported)
        assert sorted(k.name for k in imported) == ["demo", "other"]
        assert (await target.get_next_key()).secret == make_api_key("demo")

    @pytest.mark.asyncio
    async def test_import_invalid_json(self, key_pool):
        with pytest.raises(ValidationError):
            await key_pool.import_keys("invalid json")

    @pytest.mark.asyncio
    async def test_import_missing_version(self, key_pool):
        with pytest.raises(ValidationError):
            await key_pool.import_keys(json.dumps({"exported_at": "2026-01-01T00:00:00Z"}))

    @pytest.mark.asyncio
    async def test_import_malformed_entry(self, key_pool):
        payload = {
            "version": "1.0",
            "exported_at": "2026-01-01T00:00:00Z",
            "api_keys": [{"name": "demo"}],
        }
        with pytest.raises(ValidationError):
            await key_pool.import_keys(payload)

    @pytest.mark.asyncio
    async def test_import_bad_key_rolls_back(self, key_pool):
        payload = {
            "version": "1.0",
            "exported_at": "2026-01-01T00:00:00Z",
            "api_keys": [
                {"name": "good", "secret": make_api_key("good")},
                {"name": "bad", "secret": "AIza...demo"},
            ],
        }
        with pytest.raises(ValidationError):
            await key_pool.import_keys(payload)
        assert await key_pool.list_keys() == []

    @pytest.mark.asyncio
    async def test_import_without_keys(self, key_pool):
        assert await key_pool.import_keys({"version": "1.0", "exported_at": "2026-01-01T00:00:00Z"}) == []
