"""
Credit ledger: validate / deduct / refund keyed by feature and quantity.

Call discipline for every billable operation:

    validate → deduct → call the generation adapter →
        success: commit artifacts
        failure: refund, surface the error

`reservation()` packages that discipline as an async context manager so the
orchestrator cannot forget the refund. Deduction is a conditional
single-statement decrement in the store, never a read-modify-write here, so
two concurrent requests cannot jointly overdraw a balance that each of them
validated on its own.
"""

import os
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, AsyncIterator, Optional

from .. import metrics
from .errors import AdapterFailure, InsufficientCreditsError, NotFoundError
from .feature_costs import compute_cost, get_operation_type
from .store import ShortStore, get_store, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_FREE_CREDITS = Decimal(os.getenv("DEFAULT_FREE_CREDITS", "100"))
MAX_DETAIL_CHARS = 200

REFUND_GENERATION_FAILED = "generation_failed"
REFUND_INTERNAL_ERROR = "internal_error"


def _truncate_details(details: Optional[dict]) -> dict:
    """Keep audit payloads small: long strings (prompts) are cut."""
    out: dict[str, Any] = {}
    for key, value in (details or {}).items():
        if isinstance(value, str) and len(value) > MAX_DETAIL_CHARS:
            value = value[:MAX_DETAIL_CHARS]
        elif isinstance(value, Decimal):
            value = float(value)
        out[key] = value
    return out


@dataclass
class Reservation:
    """Credits held for one logical attempt."""
    user_id: str
    feature: str
    quantity: Decimal
    cost: Decimal
    details: dict = field(default_factory=dict)
    balance_after: Optional[Decimal] = None


class CreditLedger:

    def __init__(self, store: Optional[ShortStore] = None):
        self._store = store

    @property
    def store(self) -> ShortStore:
        return self._store or get_store()

    # ── Balance ──────────────────────────────────────────────────────────

    async def get_balance(self, user_id: str) -> dict:
        """Balance row for `user_id`, creating it on first need."""
        row = await self.store.get_balance(user_id)
        if row is None:
            row = await self._backfill(user_id)
        return row

    async def get_available(self, user_id: str) -> Decimal:
        row = await self.get_balance(user_id)
        return to_decimal(row["credits_remaining"])

    async def _backfill(self, user_id: str) -> dict:
        plan_credits = await self.store.get_plan_credits(user_id)
        seed = plan_credits if plan_credits is not None else DEFAULT_FREE_CREDITS
        row = await self.store.create_balance(user_id, seed)
        logger.info(f"Created credit balance for user {user_id}: {row['credits_remaining']}")
        return row

    async def backfill_all(self) -> dict:
        """Create balances for every user without one. Returns a summary."""
        user_ids = await self.store.list_users_without_balance()
        created, failed = [], []
        for user_id in user_ids:
            try:
                await self._backfill(user_id)
                created.append(user_id)
            except Exception as e:
                logger.error(f"Backfill failed for user {user_id}: {e}", exc_info=True)
                failed.append({"user_id": user_id, "error": str(e)})
        logger.info(f"Credit backfill: {len(created)} created, {len(failed)} failed")
        return {"created": len(created), "failed": failed, "user_ids": created}

    # ── Primitives ───────────────────────────────────────────────────────

    async def validate(self, user_id: str, feature: str, quantity: int | Decimal = 1) -> Decimal:
        """Raise InsufficientCreditsError if the balance does not cover the cost. No mutation."""
        cost = compute_cost(feature, quantity)
        available = await self.get_available(user_id)
        if available < cost:
            raise InsufficientCreditsError(required=cost, available=available)
        return cost

    async def deduct(
        self,
        user_id: str,
        feature: str,
        quantity: int | Decimal = 1,
        details: Optional[dict] = None,
    ) -> Decimal:
        """Charge `quantity` units of `feature`. Returns the new balance."""
        cost = compute_cost(feature, quantity)
        if await self.store.get_balance(user_id) is None:
            await self._backfill(user_id)

        new_balance = await self.store.decrement_balance(user_id, cost)
        if new_balance is None:
            available = await self.get_available(user_id)
            raise InsufficientCreditsError(required=cost, available=available)

        await self.store.insert_usage({
            "user_id": user_id,
            "feature": feature,
            "operation_type": get_operation_type(feature).value,
            "credits_used": cost,
            "details": _truncate_details(details),
            "reason": None,
        })
        metrics.inc_counter("credits.deducted", float(cost))
        logger.info(f"Deducted {cost} credits from {user_id} for {feature} (balance {new_balance})")
        return new_balance

    async def refund(
        self,
        user_id: str,
        feature: str,
        quantity: int | Decimal = 1,
        reason: str = REFUND_GENERATION_FAILED,
        details: Optional[dict] = None,
    ) -> Decimal:
        """
        Return `quantity` units of `feature`. Unconditional: the caller is
        responsible for pairing it with exactly one prior deduct.
        """
        cost = compute_cost(feature, quantity)
        try:
            new_balance = await self.store.increment_balance(user_id, cost)
        except NotFoundError:
            logger.error(f"Refund of {cost} for {user_id} found no balance row")
            raise

        await self.store.insert_usage({
            "user_id": user_id,
            "feature": feature,
            "operation_type": get_operation_type(feature).value,
            "credits_used": -cost,
            "details": _truncate_details(details),
            "reason": reason,
        })
        metrics.inc_counter("credits.refunded", float(cost))
        logger.warning(f"Refunded {cost} credits to {user_id} for {feature} ({reason}, balance {new_balance})")
        return new_balance

    # ── Reservation ──────────────────────────────────────────────────────

    @asynccontextmanager
    async def reservation(
        self,
        user_id: str,
        feature: str,
        quantity: int | Decimal = 1,
        details: Optional[dict] = None,
    ) -> AsyncIterator[Reservation]:
        """
        Validate and deduct on enter; refund if the body raises.

        A zero-cost reservation (free-tier model) touches neither the balance
        nor the audit log.

            async with ledger.reservation(user_id, "scene_regeneration") as r:
                result = await adapter.generate(...)
                if not result.success:
                    raise AdapterFailure(...)
                await store.update_scene(...)
        """
        quantity = Decimal(str(quantity))
        cost = await self.validate(user_id, feature, quantity)
        held = Reservation(user_id, feature, quantity, cost, _truncate_details(details))

        if cost == 0:
            yield held
            return

        held.balance_after = await self.deduct(user_id, feature, quantity, details)
        try:
            yield held
        except BaseException as e:
            reason = REFUND_GENERATION_FAILED if isinstance(e, AdapterFailure) else REFUND_INTERNAL_ERROR
            await self.refund(user_id, feature, quantity, reason=reason, details=details)
            raise


_ledger: Optional[CreditLedger] = None


def get_ledger() -> CreditLedger:
    global _ledger
    if _ledger is None:
        _ledger = CreditLedger()
    return _ledger
