"""
Tests for the model resolver and its cache.
"""

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from studio.pipeline import cache as cache_module
from studio.pipeline.cache import KEY_PREFIX, TTLCache
from studio.pipeline.errors import NotFoundError, ValidationError
from studio.pipeline.model_resolver import (
    DEFAULT_MODELS_KEY,
    LLM_FEATURES,
    ModelResolver,
    get_hardcoded_default,
)

CATALOG = [
    {"id": "acme/writer", "capabilities": ["text"]},
    {"id": "acme/painter", "capabilities": ["image"]},
    {"id": "acme/omni", "capabilities": ["text", "image", "vision"]},
]


def _catalog_fetcher(models=CATALOG):
    return AsyncMock(return_value=({"id": "acme", "name": "Acme"}, list(models)))


# ── Defaults and overrides ───────────────────────────────────────────────────

def test_hardcoded_default_for_unknown_feature():
    assert get_hardcoded_default("agent_scriptwriter") == "deepseek/deepseek-v3.2"
    with pytest.raises(ValidationError):
        get_hardcoded_default("agent_poet")


@pytest.mark.asyncio
async def test_default_model_without_override(resolver):
    assert await resolver.get_default_model("ai_image") == LLM_FEATURES["ai_image"].default_model


@pytest.mark.asyncio
async def test_all_defaults_cover_every_feature(resolver, store):
    store.admin_models["agent_prompt_engineer"] = "openai/gpt-4o"

    models = await resolver.get_all_default_models()

    assert set(models) == set(LLM_FEATURES)
    assert models["agent_prompt_engineer"] == "openai/gpt-4o"
    assert models["ai_video"] == LLM_FEATURES["ai_video"].default_model


@pytest.mark.asyncio
async def test_overrides_are_cached_until_invalidated(resolver, store):
    assert await resolver.get_default_model("agent_prompt_engineer") == "deepseek/deepseek-v3.2"

    # A write that bypasses the resolver is not seen until the cache is dropped
    store.admin_models["agent_prompt_engineer"] = "openai/gpt-4o"
    assert await resolver.get_default_model("agent_prompt_engineer") == "deepseek/deepseek-v3.2"

    resolver.invalidate_model_cache()
    assert await resolver.get_default_model("agent_prompt_engineer") == "openai/gpt-4o"


@pytest.mark.asyncio
async def test_save_is_visible_immediately(resolver):
    await resolver.get_default_model("agent_prompt_engineer")

    saved = await resolver.save_default_models({"agent_prompt_engineer": "  openai/gpt-4o  "})

    assert saved["agent_prompt_engineer"] == "openai/gpt-4o"
    assert await resolver.get_default_model("agent_prompt_engineer") == "openai/gpt-4o"


@pytest.mark.asyncio
async def test_save_with_unknown_key_writes_nothing(resolver, store):
    with pytest.raises(ValidationError) as exc:
        await resolver.save_default_models({"agent_prompt_engineer": "openai/gpt-4o", "agent_poet": "x/y"})

    assert exc.value.details["unknown"] == ["agent_poet"]
    assert store.admin_models == {}


@pytest.mark.asyncio
async def test_save_with_empty_model_is_rejected(resolver, store):
    with pytest.raises(ValidationError):
        await resolver.save_default_models({"agent_prompt_engineer": "   "})
    assert store.admin_models == {}


@pytest.mark.asyncio
async def test_store_error_falls_back_to_hardcoded_default():
    store = MagicMock()
    store.get_admin_models = AsyncMock(side_effect=ConnectionError("supabase down"))
    resolver = ModelResolver(store=store, cache=TTLCache(None), catalogs={})

    assert await resolver.get_default_model("agent_scriptwriter") == "deepseek/deepseek-v3.2"


# ── Provider catalogs ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_catalog_is_fetched_once_and_cached(store):
    fetch = _catalog_fetcher()
    resolver = ModelResolver(store=store, cache=TTLCache(None), catalogs={"acme": fetch})

    first = await resolver.get_models_from_provider("acme")
    second = await resolver.get_models_from_provider("acme")

    assert fetch.await_count == 1
    assert len(first["models"]) == 3
    assert first["cached_at"] == second["cached_at"]
    assert first["provider"]["name"] == "Acme"
    assert first["cache_expires_at"] > first["cached_at"]


@pytest.mark.asyncio
async def test_force_refresh_refetches(store):
    fetch = _catalog_fetcher()
    resolver = ModelResolver(store=store, cache=TTLCache(None), catalogs={"acme": fetch})

    await resolver.get_models_from_provider("acme")
    await resolver.get_models_from_provider("acme", force_refresh=True)

    assert fetch.await_count == 2


@pytest.mark.asyncio
async def test_capability_filter_reuses_cached_list(store):
    fetch = _catalog_fetcher()
    resolver = ModelResolver(store=store, cache=TTLCache(None), catalogs={"acme": fetch})

    image = await resolver.get_models_from_provider("acme", capability="image")
    vision = await resolver.get_models_from_provider("acme", capability="vision")

    assert [m["id"] for m in image["models"]] == ["acme/painter", "acme/omni"]
    assert [m["id"] for m in vision["models"]] == ["acme/omni"]
    assert fetch.await_count == 1


@pytest.mark.asyncio
async def test_unknown_provider_is_not_found(resolver):
    with pytest.raises(NotFoundError):
        await resolver.get_models_from_provider("nobody")


@pytest.mark.asyncio
async def test_cache_stats_and_invalidation(store):
    resolver = ModelResolver(
        store=store,
        cache=TTLCache(None),
        catalogs={"acme": _catalog_fetcher(), "zeta": _catalog_fetcher()},
    )
    await resolver.get_models_from_provider("acme")

    stats = resolver.get_cache_stats()
    assert stats["backend"] == "memory"
    assert stats["acme"]["cached"] is True
    assert 0 < stats["acme"]["expires_in"] <= 3600
    assert stats["zeta"] == {"cached": False}

    resolver.invalidate_catalog_cache()
    assert resolver.get_cache_stats()["acme"] == {"cached": False}


# ── TTLCache ─────────────────────────────────────────────────────────────────

def test_memory_cache_expires_entries(monkeypatch):
    cache = TTLCache(None)
    now = time.time()
    monkeypatch.setattr(cache_module, "time", SimpleNamespace(time=lambda: now))
    cache.set("k", {"a": 1}, 10)
    assert cache.get("k") == {"a": 1}
    assert cache.ttl("k") == pytest.approx(10)

    monkeypatch.setattr(cache_module, "time", SimpleNamespace(time=lambda: now + 11))
    assert cache.get("k") is None
    assert cache.ttl("k") is None


def test_memory_cache_delete_and_clear():
    cache = TTLCache(None)
    cache.set("a", 1, 60)
    cache.set("b", 2, 60)

    cache.delete("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2

    cache.clear()
    assert cache.get("b") is None


def test_redis_backend_uses_prefixed_json_keys():
    client = MagicMock()
    client.get.return_value = '{"agent_prompt_engineer": "openai/gpt-4o"}'
    client.ttl.return_value = 42
    cache = TTLCache(client)

    cache.set(DEFAULT_MODELS_KEY, {"agent_prompt_engineer": "openai/gpt-4o"}, 300)
    client.set.assert_called_once_with(KEY_PREFIX + DEFAULT_MODELS_KEY, '{"agent_prompt_engineer": "openai/gpt-4o"}', ex=300)

    assert cache.get(DEFAULT_MODELS_KEY) == {"agent_prompt_engineer": "openai/gpt-4o"}
    assert cache.ttl(DEFAULT_MODELS_KEY) == 42.0
    assert cache.backend == "redis"

    cache.delete("a", "b")
    client.delete.assert_called_once_with(KEY_PREFIX + "a", KEY_PREFIX + "b")
