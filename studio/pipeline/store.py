"""
Persistence contract for the shorts pipeline.

Two implementations share this interface:
  - SupabaseStore: production, service-role client; the atomic primitives
    are Postgres functions called through rpc()
  - MemoryStore:   in-process fallback when Supabase is not configured

Rows are plain dicts shaped like the Supabase tables. Scene rows carry
`order_index`; every layout change is passed as a full {scene_id: order}
map so the store can apply it in one atomic write.
"""

import os
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_decimal(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else 0))


class ShortStore(ABC):
    """Async persistence interface consumed by the ledger, resolver and orchestrator."""

    # ── Identity / plans ─────────────────────────────────────────────────

    @abstractmethod
    async def resolve_user(self, external_id: str) -> Optional[str]:
        """Map an external caller identity to the internal user id."""

    @abstractmethod
    async def get_plan_credits(self, user_id: str) -> Optional[Decimal]:
        """Credits granted by the user's current plan, if any."""

    @abstractmethod
    async def list_users_without_balance(self) -> list[str]:
        ...

    # ── Credit balance ───────────────────────────────────────────────────

    @abstractmethod
    async def get_balance(self, user_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def create_balance(self, user_id: str, credits: Decimal) -> dict:
        """Insert a balance row; returns the existing row if one was created concurrently."""

    @abstractmethod
    async def decrement_balance(self, user_id: str, amount: Decimal) -> Optional[Decimal]:
        """
        Conditional single-statement decrement.

        Returns the new balance, or None when the row is missing or the
        balance does not cover `amount`. Never leaves the balance negative.
        """

    @abstractmethod
    async def increment_balance(self, user_id: str, amount: Decimal) -> Decimal:
        ...

    @abstractmethod
    async def insert_usage(self, record: dict) -> None:
        """Append one audit record to usage_history."""

    @abstractmethod
    async def list_usage(self, user_id: str) -> list[dict]:
        ...

    # ── Shorts ───────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_short(self, row: dict, scenes: list[dict]) -> None:
        """Create a short and its initial scenes in one transaction."""

    @abstractmethod
    async def get_short(self, short_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def list_shorts(self, user_id: str) -> list[dict]:
        """Shorts owned by `user_id`, newest first."""

    @abstractmethod
    async def update_short(
        self,
        short_id: str,
        fields: dict,
        expected_status: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Update a short. When `expected_status` is given the write only applies
        if the stored status still matches; returns None otherwise.
        """

    @abstractmethod
    async def add_short_credits(self, short_id: str, amount: Decimal) -> None:
        ...

    # ── Scenes ───────────────────────────────────────────────────────────

    @abstractmethod
    async def list_scenes(self, short_id: str) -> list[dict]:
        """Scenes of a short ordered by order_index ascending."""

    @abstractmethod
    async def get_scene(self, scene_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def update_scene(self, scene_id: str, fields: dict) -> Optional[dict]:
        """Edit scene content fields. Never used for order_index."""

    @abstractmethod
    async def replace_scenes(
        self,
        short_id: str,
        scenes: list[dict],
        short_fields: dict,
        expected_status: Optional[str] = None,
    ) -> None:
        """
        Delete every scene of the short, insert `scenes`, update the short; one
        transaction. Raises ConflictError, writing nothing, when the short is
        not in `expected_status`.
        """

    @abstractmethod
    async def insert_scene(self, short_id: str, row: dict, layout: dict[str, int]) -> dict:
        """Insert `row` and apply `layout` (which includes the new id) atomically."""

    @abstractmethod
    async def delete_scene(self, short_id: str, scene_id: str, layout: dict[str, int]) -> None:
        """Delete a scene and apply `layout` to the remaining siblings atomically."""

    @abstractmethod
    async def apply_layout(self, short_id: str, layout: dict[str, int]) -> None:
        ...

    # ── Admin settings ───────────────────────────────────────────────────

    @abstractmethod
    async def get_admin_models(self) -> dict[str, str]:
        ...

    @abstractmethod
    async def save_admin_models(self, models: dict[str, str]) -> dict[str, str]:
        """Upsert feature → model overrides; returns the merged map."""


# ── Store selection ──────────────────────────────────────────────────────────

_store: Optional[ShortStore] = None


def get_store() -> ShortStore:
    """Supabase when configured, else the in-process fallback store."""
    global _store
    if _store is None:
        if os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
            from .supabase_store import SupabaseStore
            _store = SupabaseStore()
            logger.info("Using Supabase store")
        else:
            from .memory_store import MemoryStore
            _store = MemoryStore()
            logger.warning("SUPABASE_URL not set, using in-memory fallback store")
    return _store


def set_store(store: Optional[ShortStore]) -> None:
    """Replace the process-wide store (tests, alternate backends)."""
    global _store
    _store = store
