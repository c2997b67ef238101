"""
In-process fallback store.

Activates when Supabase is not configured. Every primitive runs under one
asyncio lock, so the conditional decrement and the scene layout writes are
atomic within the process, matching what the Postgres functions give the
Supabase store. State is lost on restart.
"""

import asyncio
import copy
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .errors import ConflictError, NotFoundError
from .ordering import is_dense
from .store import ShortStore, now_iso, to_decimal


class MemoryStore(ShortStore):

    def __init__(self):
        self._lock = asyncio.Lock()
        self.users: dict[str, dict] = {}
        self.plans: dict[str, dict] = {}
        self.balances: dict[str, dict] = {}
        self.usage: list[dict] = []
        self.shorts: dict[str, dict] = {}
        self.scenes: dict[str, dict] = {}
        self.admin_models: dict[str, str] = {}

    # ── Seeding helpers (local dev / tests) ──────────────────────────────

    def add_user(
        self,
        user_id: str,
        external_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        credits: Optional[Decimal] = None,
    ) -> None:
        self.users[user_id] = {
            "id": user_id,
            "external_id": external_id or user_id,
            "current_plan_id": plan_id,
        }
        if credits is not None:
            self.balances[user_id] = {
                "user_id": user_id,
                "credits_remaining": to_decimal(credits),
                "last_synced_at": now_iso(),
            }

    def add_plan(self, plan_id: str, credits: Decimal, name: str = "") -> None:
        self.plans[plan_id] = {"id": plan_id, "name": name or plan_id, "credits": to_decimal(credits)}

    # ── Identity / plans ─────────────────────────────────────────────────

    async def resolve_user(self, external_id: str) -> Optional[str]:
        for user in self.users.values():
            if user["external_id"] == external_id:
                return user["id"]
        return None

    async def get_plan_credits(self, user_id: str) -> Optional[Decimal]:
        user = self.users.get(user_id)
        if not user or not user.get("current_plan_id"):
            return None
        plan = self.plans.get(user["current_plan_id"])
        return plan["credits"] if plan else None

    async def list_users_without_balance(self) -> list[str]:
        return [uid for uid in self.users if uid not in self.balances]

    # ── Credit balance ───────────────────────────────────────────────────

    async def get_balance(self, user_id: str) -> Optional[dict]:
        row = self.balances.get(user_id)
        return dict(row) if row else None

    async def create_balance(self, user_id: str, credits: Decimal) -> dict:
        async with self._lock:
            if user_id not in self.balances:
                self.balances[user_id] = {
                    "user_id": user_id,
                    "credits_remaining": to_decimal(credits),
                    "last_synced_at": now_iso(),
                }
            return dict(self.balances[user_id])

    async def decrement_balance(self, user_id: str, amount: Decimal) -> Optional[Decimal]:
        async with self._lock:
            row = self.balances.get(user_id)
            if row is None or row["credits_remaining"] < amount:
                return None
            row["credits_remaining"] -= amount
            row["last_synced_at"] = now_iso()
            return row["credits_remaining"]

    async def increment_balance(self, user_id: str, amount: Decimal) -> Decimal:
        async with self._lock:
            row = self.balances.get(user_id)
            if row is None:
                raise NotFoundError(f"No credit balance for user {user_id}")
            row["credits_remaining"] += amount
            row["last_synced_at"] = now_iso()
            return row["credits_remaining"]

    async def insert_usage(self, record: dict) -> None:
        async with self._lock:
            self.usage.append({"id": str(uuid4()), "created_at": now_iso(), **copy.deepcopy(record)})

    async def list_usage(self, user_id: str) -> list[dict]:
        return [copy.deepcopy(r) for r in self.usage if r["user_id"] == user_id]

    # ── Shorts ───────────────────────────────────────────────────────────

    async def insert_short(self, row: dict, scenes: list[dict]) -> None:
        async with self._lock:
            stamp = now_iso()
            self.shorts[row["id"]] = {"created_at": stamp, "updated_at": stamp, **copy.deepcopy(row)}
            for scene in scenes:
                self.scenes[scene["id"]] = {"created_at": stamp, **copy.deepcopy(scene)}
            self._check_layout(row["id"])

    async def get_short(self, short_id: str) -> Optional[dict]:
        row = self.shorts.get(short_id)
        return copy.deepcopy(row) if row else None

    async def list_shorts(self, user_id: str) -> list[dict]:
        rows = [copy.deepcopy(s) for s in self.shorts.values() if s["user_id"] == user_id]
        return sorted(rows, key=lambda s: s["created_at"], reverse=True)

    async def update_short(
        self,
        short_id: str,
        fields: dict,
        expected_status: Optional[str] = None,
    ) -> Optional[dict]:
        async with self._lock:
            row = self.shorts.get(short_id)
            if row is None:
                return None
            if expected_status is not None and row["status"] != expected_status:
                return None
            row.update(copy.deepcopy(fields))
            row["updated_at"] = now_iso()
            return copy.deepcopy(row)

    async def add_short_credits(self, short_id: str, amount: Decimal) -> None:
        async with self._lock:
            row = self.shorts.get(short_id)
            if row is not None:
                row["credits_used"] = to_decimal(row.get("credits_used")) + amount

    # ── Scenes ───────────────────────────────────────────────────────────

    async def list_scenes(self, short_id: str) -> list[dict]:
        rows = [copy.deepcopy(s) for s in self.scenes.values() if s["short_id"] == short_id]
        return sorted(rows, key=lambda s: s["order_index"])

    async def get_scene(self, scene_id: str) -> Optional[dict]:
        row = self.scenes.get(scene_id)
        return copy.deepcopy(row) if row else None

    async def update_scene(self, scene_id: str, fields: dict) -> Optional[dict]:
        async with self._lock:
            row = self.scenes.get(scene_id)
            if row is None:
                return None
            row.update({k: copy.deepcopy(v) for k, v in fields.items() if k != "order_index"})
            row["updated_at"] = now_iso()
            return copy.deepcopy(row)

    async def replace_scenes(
        self,
        short_id: str,
        scenes: list[dict],
        short_fields: dict,
        expected_status: Optional[str] = None,
    ) -> None:
        async with self._lock:
            short = self.shorts.get(short_id)
            if short is None:
                raise NotFoundError(f"Short {short_id} not found")
            if expected_status is not None and short["status"] != expected_status:
                raise ConflictError(
                    f"Short {short_id} is {short['status']}, expected {expected_status}; scenes not replaced"
                )
            for scene_id in [sid for sid, s in self.scenes.items() if s["short_id"] == short_id]:
                del self.scenes[scene_id]
            stamp = now_iso()
            for scene in scenes:
                self.scenes[scene["id"]] = {"created_at": stamp, **copy.deepcopy(scene)}
            self.shorts[short_id].update(copy.deepcopy(short_fields))
            self.shorts[short_id]["updated_at"] = stamp
            self._check_layout(short_id)

    async def insert_scene(self, short_id: str, row: dict, layout: dict[str, int]) -> dict:
        async with self._lock:
            snapshot = self._snapshot(short_id)
            self.scenes[row["id"]] = {"created_at": now_iso(), **copy.deepcopy(row)}
            self._apply(short_id, layout, snapshot)
            return copy.deepcopy(self.scenes[row["id"]])

    async def delete_scene(self, short_id: str, scene_id: str, layout: dict[str, int]) -> None:
        async with self._lock:
            snapshot = self._snapshot(short_id)
            self.scenes.pop(scene_id, None)
            self._apply(short_id, layout, snapshot)

    async def apply_layout(self, short_id: str, layout: dict[str, int]) -> None:
        async with self._lock:
            self._apply(short_id, layout, self._snapshot(short_id))

    def _snapshot(self, short_id: str) -> dict[str, dict]:
        return {sid: copy.deepcopy(s) for sid, s in self.scenes.items() if s["short_id"] == short_id}

    def _apply(self, short_id: str, layout: dict[str, int], snapshot: dict[str, dict]) -> None:
        """Write a full layout; roll back to `snapshot` if it breaks the unique/dense rule."""
        for scene_id, order in layout.items():
            if scene_id in self.scenes:
                self.scenes[scene_id]["order_index"] = order
        try:
            self._check_layout(short_id)
        except ConflictError:
            for scene_id in [sid for sid, s in self.scenes.items() if s["short_id"] == short_id]:
                del self.scenes[scene_id]
            self.scenes.update(snapshot)
            raise

    def _check_layout(self, short_id: str) -> None:
        orders = [s["order_index"] for s in self.scenes.values() if s["short_id"] == short_id]
        if not is_dense(orders):
            raise ConflictError(
                f"Scene order for short {short_id} is not unique and dense: {sorted(orders)}",
                code="order_conflict",
            )

    # ── Admin settings ───────────────────────────────────────────────────

    async def get_admin_models(self) -> dict[str, str]:
        return dict(self.admin_models)

    async def save_admin_models(self, models: dict[str, str]) -> dict[str, str]:
        async with self._lock:
            self.admin_models.update(models)
            return dict(self.admin_models)
