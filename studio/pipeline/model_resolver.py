"""
Model resolver: which AI model backs each feature, and what upstream
catalogs offer.

Priority for a feature's model: admin override (admin_settings.default_models)
→ hard-coded default. Overrides are read through a cache with a short TTL;
saving invalidates it. Provider catalogs are cached per provider with a
longer TTL, and the capability filter is applied after the cache so one
cached list serves every filter.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from .cache import TTLCache, get_redis
from .errors import NotFoundError, ValidationError
from .store import ShortStore, get_store

logger = logging.getLogger(__name__)

MODEL_CACHE_TTL_SECONDS = int(os.getenv("MODEL_CACHE_TTL_SECONDS", "300"))
CATALOG_CACHE_TTL_SECONDS = int(os.getenv("CATALOG_CACHE_TTL_SECONDS", "3600"))

DEFAULT_MODELS_KEY = "default_models"
CATALOG_KEY_PREFIX = "catalog:"


class LLMFeature(NamedTuple):
    label: str
    model_type: str  # text, image, video
    default_model: str


LLM_FEATURES: dict[str, LLMFeature] = {
    "agent_scriptwriter": LLMFeature("Scriptwriter agent", "text", "deepseek/deepseek-v3.2"),
    "agent_prompt_engineer": LLMFeature("Prompt engineer agent", "text", "deepseek/deepseek-v3.2"),
    "ai_image": LLMFeature("Scene images", "image", "fal-ai/flux/schnell"),
    "ai_video": LLMFeature("Scene videos", "video", "fal-ai/kling-video/v2.5-turbo/pro/image-to-video"),
}

# provider → async fn returning (provider_info, models)
CatalogFetcher = Callable[[], Awaitable[tuple[dict, list[dict]]]]


def get_hardcoded_default(feature_key: str) -> str:
    try:
        return LLM_FEATURES[feature_key].default_model
    except KeyError:
        raise ValidationError(f"Unknown model feature: {feature_key}") from None


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class ModelResolver:

    def __init__(
        self,
        store: Optional[ShortStore] = None,
        cache: Optional[TTLCache] = None,
        catalogs: Optional[dict[str, CatalogFetcher]] = None,
    ):
        self._store = store
        self.cache = cache if cache is not None else TTLCache(get_redis())
        self._catalogs = catalogs

    @property
    def store(self) -> ShortStore:
        return self._store or get_store()

    @property
    def catalogs(self) -> dict[str, CatalogFetcher]:
        if self._catalogs is None:
            from ..provider_factory import ProviderFactory
            self._catalogs = ProviderFactory.catalog_fetchers()
        return self._catalogs

    # ── Default models ───────────────────────────────────────────────────

    async def _overrides(self) -> dict[str, str]:
        cached = self.cache.get(DEFAULT_MODELS_KEY)
        if cached is not None:
            return cached
        overrides = await self.store.get_admin_models()
        self.cache.set(DEFAULT_MODELS_KEY, overrides, MODEL_CACHE_TTL_SECONDS)
        return overrides

    async def get_default_model(self, feature_key: str) -> str:
        fallback = get_hardcoded_default(feature_key)
        try:
            overrides = await self._overrides()
        except Exception as e:
            logger.error(f"Default model lookup failed for {feature_key}, using {fallback}: {e}", exc_info=True)
            return fallback
        return overrides.get(feature_key) or fallback

    async def get_all_default_models(self) -> dict[str, str]:
        overrides = await self._overrides()
        return {key: overrides.get(key) or feature.default_model for key, feature in LLM_FEATURES.items()}

    async def save_default_models(self, models: dict[str, str]) -> dict[str, str]:
        """Validate every key first; nothing is written if any key is unknown."""
        unknown = sorted(k for k in models if k not in LLM_FEATURES)
        if unknown:
            raise ValidationError(
                f"Unknown model feature(s): {', '.join(unknown)}",
                details={"unknown": unknown, "known": sorted(LLM_FEATURES)},
            )
        empty = sorted(k for k, v in models.items() if not isinstance(v, str) or not v.strip())
        if empty:
            raise ValidationError(f"Model id is empty for: {', '.join(empty)}", details={"empty": empty})

        cleaned = {k: v.strip() for k, v in models.items()}
        await self.store.save_admin_models(cleaned)
        self.invalidate_model_cache()
        logger.info(f"Saved default models: {cleaned}")
        return await self.get_all_default_models()

    def invalidate_model_cache(self) -> None:
        self.cache.delete(DEFAULT_MODELS_KEY)

    # ── Provider catalogs ────────────────────────────────────────────────

    async def get_models_from_provider(
        self,
        provider: str,
        force_refresh: bool = False,
        capability: Optional[str] = None,
    ) -> dict[str, Any]:
        fetcher = self.catalogs.get(provider)
        if fetcher is None:
            raise NotFoundError(f"Provider not found: {provider}")

        key = CATALOG_KEY_PREFIX + provider
        entry = None if force_refresh else self.cache.get(key)
        if entry is None:
            info, models = await fetcher()
            now = datetime.now(timezone.utc).timestamp()
            entry = {
                "provider": info,
                "models": models,
                "cached_at": now,
                "expires_at": now + CATALOG_CACHE_TTL_SECONDS,
            }
            self.cache.set(key, entry, CATALOG_CACHE_TTL_SECONDS)
            logger.info(f"Fetched {len(models)} models from {provider}")

        models = entry["models"]
        if capability:
            models = [m for m in models if capability in m.get("capabilities", [])]
        return {
            "provider": entry["provider"],
            "models": models,
            "cached_at": _iso(entry["cached_at"]),
            "cache_expires_at": _iso(entry["expires_at"]),
        }

    def invalidate_catalog_cache(self, provider: Optional[str] = None) -> None:
        providers = [provider] if provider else list(self.catalogs)
        self.cache.delete(*(CATALOG_KEY_PREFIX + p for p in providers))

    def get_cache_stats(self) -> dict[str, dict]:
        stats = {}
        for provider in self.catalogs:
            remaining = self.cache.ttl(CATALOG_KEY_PREFIX + provider)
            stats[provider] = {"cached": remaining is not None}
            if remaining is not None:
                stats[provider]["expires_in"] = round(remaining, 1)
        stats["backend"] = self.cache.backend
        return stats


_resolver: Optional[ModelResolver] = None


def get_resolver() -> ModelResolver:
    global _resolver
    if _resolver is None:
        _resolver = ModelResolver()
    return _resolver


def set_resolver(resolver: Optional[ModelResolver]) -> None:
    global _resolver
    _resolver = resolver
