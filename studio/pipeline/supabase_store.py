"""
Supabase-backed store.

All mutations go through the service-role client (RLS bypass). Plain reads
and single-row edits use the table API; the primitives that must be atomic
are Postgres functions from supabase/migrations/0001_shorts_pipeline.sql:

  deduct_credits          conditional decrement-if-sufficient
  refund_credits          increment
  create_short            short + initial scenes
  replace_short_scenes    status-checked: delete all scenes, insert new set, update short
  insert_short_scene      insert + sibling re-index
  delete_short_scene      delete + sibling re-index
  apply_scene_layout      full re-index
  increment_short_credits

(short_id, order_index) is a DEFERRABLE unique constraint, so a layout that
permutes indices is checked once at commit.
"""

import os
import json
import logging
from decimal import Decimal
from typing import Any, Optional

from supabase import create_client, Client

from .errors import ConfigError, ConflictError
from .store import ShortStore, now_iso, to_decimal

logger = logging.getLogger(__name__)

SHORTS_TABLE = "shorts"
SCENES_TABLE = "short_scenes"
BALANCES_TABLE = "credit_balances"
USAGE_TABLE = "usage_history"
USERS_TABLE = "users"
PLANS_TABLE = "plans"
SETTINGS_TABLE = "admin_settings"
SETTINGS_ROW_ID = "singleton"


def _jsonable(row: dict) -> dict:
    """Decimal → float so PostgREST can serialise the payload."""
    return {k: float(v) if isinstance(v, Decimal) else v for k, v in row.items()}


def _first(result: Any) -> Optional[dict]:
    data = result.data or []
    if isinstance(data, dict):
        return data
    return data[0] if data else None


class SupabaseStore(ShortStore):

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        """Lazy-init Supabase client using service role key."""
        if self._client is None:
            url = os.getenv("SUPABASE_URL", "")
            key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
            if not url or not key:
                raise ConfigError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(url, key)
        return self._client

    # ── Identity / plans ─────────────────────────────────────────────────

    async def resolve_user(self, external_id: str) -> Optional[str]:
        result = self.sb.table(USERS_TABLE).select("id").eq("external_id", external_id).limit(1).execute()
        row = _first(result)
        return row["id"] if row else None

    async def get_plan_credits(self, user_id: str) -> Optional[Decimal]:
        user = _first(
            self.sb.table(USERS_TABLE).select("current_plan_id").eq("id", user_id).limit(1).execute()
        )
        if not user or not user.get("current_plan_id"):
            return None
        plan = _first(
            self.sb.table(PLANS_TABLE).select("credits").eq("id", user["current_plan_id"]).limit(1).execute()
        )
        return to_decimal(plan["credits"]) if plan else None

    async def list_users_without_balance(self) -> list[str]:
        result = self.sb.rpc("users_without_credit_balance", {}).execute()
        return [row["id"] for row in (result.data or [])]

    # ── Credit balance ───────────────────────────────────────────────────

    async def get_balance(self, user_id: str) -> Optional[dict]:
        row = _first(self.sb.table(BALANCES_TABLE).select("*").eq("user_id", user_id).limit(1).execute())
        if row:
            row["credits_remaining"] = to_decimal(row["credits_remaining"])
        return row

    async def create_balance(self, user_id: str, credits: Decimal) -> dict:
        self.sb.table(BALANCES_TABLE).upsert(
            {"user_id": user_id, "credits_remaining": float(credits), "last_synced_at": now_iso()},
            on_conflict="user_id",
            ignore_duplicates=True,
        ).execute()
        return await self.get_balance(user_id)

    async def decrement_balance(self, user_id: str, amount: Decimal) -> Optional[Decimal]:
        result = self.sb.rpc("deduct_credits", {"p_user_id": user_id, "p_amount": float(amount)}).execute()
        return None if result.data is None else to_decimal(result.data)

    async def increment_balance(self, user_id: str, amount: Decimal) -> Decimal:
        result = self.sb.rpc("refund_credits", {"p_user_id": user_id, "p_amount": float(amount)}).execute()
        return to_decimal(result.data)

    async def insert_usage(self, record: dict) -> None:
        payload = _jsonable(record)
        payload["details"] = json.loads(json.dumps(payload.get("details") or {}, default=str))
        self.sb.table(USAGE_TABLE).insert(payload).execute()

    async def list_usage(self, user_id: str) -> list[dict]:
        result = (
            self.sb.table(USAGE_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=False)
            .execute()
        )
        return result.data or []

    # ── Shorts ───────────────────────────────────────────────────────────

    async def insert_short(self, row: dict, scenes: list[dict]) -> None:
        self.sb.rpc("create_short", {
            "p_short": _jsonable(row),
            "p_scenes": [_jsonable(s) for s in scenes],
        }).execute()

    async def get_short(self, short_id: str) -> Optional[dict]:
        return _first(self.sb.table(SHORTS_TABLE).select("*").eq("id", short_id).limit(1).execute())

    async def list_shorts(self, user_id: str) -> list[dict]:
        result = (
            self.sb.table(SHORTS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return result.data or []

    async def update_short(
        self,
        short_id: str,
        fields: dict,
        expected_status: Optional[str] = None,
    ) -> Optional[dict]:
        query = self.sb.table(SHORTS_TABLE).update(_jsonable({**fields, "updated_at": now_iso()})).eq("id", short_id)
        if expected_status is not None:
            query = query.eq("status", expected_status)
        return _first(query.execute())

    async def add_short_credits(self, short_id: str, amount: Decimal) -> None:
        self.sb.rpc("increment_short_credits", {"p_short_id": short_id, "p_amount": float(amount)}).execute()

    # ── Scenes ───────────────────────────────────────────────────────────

    async def list_scenes(self, short_id: str) -> list[dict]:
        result = (
            self.sb.table(SCENES_TABLE)
            .select("*")
            .eq("short_id", short_id)
            .order("order_index", desc=False)
            .execute()
        )
        return result.data or []

    async def get_scene(self, scene_id: str) -> Optional[dict]:
        return _first(self.sb.table(SCENES_TABLE).select("*").eq("id", scene_id).limit(1).execute())

    async def update_scene(self, scene_id: str, fields: dict) -> Optional[dict]:
        fields = {k: v for k, v in fields.items() if k != "order_index"}
        fields["updated_at"] = now_iso()
        return _first(self.sb.table(SCENES_TABLE).update(_jsonable(fields)).eq("id", scene_id).execute())

    async def replace_scenes(
        self,
        short_id: str,
        scenes: list[dict],
        short_fields: dict,
        expected_status: Optional[str] = None,
    ) -> None:
        result = self.sb.rpc("replace_short_scenes", {
            "p_short_id": short_id,
            "p_scenes": [_jsonable(s) for s in scenes],
            "p_short": _jsonable(short_fields),
            "p_expected_status": expected_status,
        }).execute()
        if result.data is False:
            raise ConflictError(f"Short {short_id} is no longer {expected_status}; scenes not replaced")

    async def insert_scene(self, short_id: str, row: dict, layout: dict[str, int]) -> dict:
        result = self.sb.rpc("insert_short_scene", {
            "p_short_id": short_id,
            "p_scene": _jsonable(row),
            "p_layout": layout,
        }).execute()
        return _first(result) or await self.get_scene(row["id"])

    async def delete_scene(self, short_id: str, scene_id: str, layout: dict[str, int]) -> None:
        self.sb.rpc("delete_short_scene", {
            "p_short_id": short_id,
            "p_scene_id": scene_id,
            "p_layout": layout,
        }).execute()

    async def apply_layout(self, short_id: str, layout: dict[str, int]) -> None:
        self.sb.rpc("apply_scene_layout", {"p_short_id": short_id, "p_layout": layout}).execute()

    # ── Admin settings ───────────────────────────────────────────────────

    async def get_admin_models(self) -> dict[str, str]:
        row = _first(
            self.sb.table(SETTINGS_TABLE).select("default_models").eq("id", SETTINGS_ROW_ID).limit(1).execute()
        )
        return dict((row or {}).get("default_models") or {})

    async def save_admin_models(self, models: dict[str, str]) -> dict[str, str]:
        merged = {**await self.get_admin_models(), **models}
        self.sb.table(SETTINGS_TABLE).upsert(
            {"id": SETTINGS_ROW_ID, "default_models": merged, "updated_at": now_iso()},
            on_conflict="id",
        ).execute()
        return merged
