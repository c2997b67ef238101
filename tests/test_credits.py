"""
Tests for the credit ledger: validation, deduction, refunds and backfill.
"""

import asyncio
from decimal import Decimal

import pytest

from conftest import USER_ID, balance_of
from studio import metrics
from studio.pipeline.credits import DEFAULT_FREE_CREDITS, MAX_DETAIL_CHARS, CreditLedger
from studio.pipeline.errors import AdapterFailure, InsufficientCreditsError, ValidationError
from studio.pipeline.memory_store import MemoryStore


# ── Validate ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_validate_returns_cost_without_mutation(store, ledger):
    cost = await ledger.validate(USER_ID, "scene_image_generation", 3)

    assert cost == Decimal("6")
    assert await balance_of(store) == Decimal("100")
    assert store.usage == []


@pytest.mark.asyncio
async def test_validate_insufficient(store, ledger):
    store.balances[USER_ID]["credits_remaining"] = Decimal("1")

    with pytest.raises(InsufficientCreditsError) as exc:
        await ledger.validate(USER_ID, "scene_video_generation")

    assert exc.value.required == Decimal("5")
    assert exc.value.available == Decimal("1")
    assert exc.value.to_dict()["error"] == "insufficient_credits"


@pytest.mark.asyncio
async def test_validate_unknown_feature(ledger):
    with pytest.raises(ValidationError):
        await ledger.validate(USER_ID, "not_a_feature")


# ── Deduct / refund ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_deduct_writes_one_audit_record(store, ledger):
    new_balance = await ledger.deduct(USER_ID, "scene_regeneration", 1, {"scene_id": "s1"})

    assert new_balance == Decimal("99.5")
    assert await balance_of(store) == Decimal("99.5")
    [record] = await store.list_usage(USER_ID)
    assert record["feature"] == "scene_regeneration"
    assert record["operation_type"] == "SCENE_REGENERATION"
    assert record["credits_used"] == Decimal("0.5")
    assert record["reason"] is None
    assert record["details"] == {"scene_id": "s1"}
    assert metrics.get_counter("credits.deducted") == 0.5


@pytest.mark.asyncio
async def test_deduct_insufficient_leaves_balance(store, ledger):
    store.balances[USER_ID]["credits_remaining"] = Decimal("1")

    with pytest.raises(InsufficientCreditsError):
        await ledger.deduct(USER_ID, "scene_image_generation")

    assert await balance_of(store) == Decimal("1")
    assert store.usage == []


@pytest.mark.asyncio
async def test_deduct_truncates_long_details(store, ledger):
    await ledger.deduct(USER_ID, "ai_text_chat", 1, {"prompt": "x" * 1000})

    [record] = await store.list_usage(USER_ID)
    assert len(record["details"]["prompt"]) == MAX_DETAIL_CHARS


@pytest.mark.asyncio
async def test_concurrent_deducts_never_overdraw(store, ledger):
    store.balances[USER_ID]["credits_remaining"] = Decimal("3")

    outcomes = await asyncio.gather(
        *(ledger.deduct(USER_ID, "ai_text_chat") for _ in range(5)),
        return_exceptions=True,
    )

    succeeded = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, InsufficientCreditsError)]
    assert len(succeeded) == 3
    assert len(rejected) == 2
    assert await balance_of(store) == Decimal("0")
    assert len(store.usage) == 3


@pytest.mark.asyncio
async def test_refund_records_negative_usage_with_reason(store, ledger):
    await ledger.deduct(USER_ID, "scene_image_generation")
    await ledger.refund(USER_ID, "scene_image_generation", reason="generation_failed")

    assert await balance_of(store) == Decimal("100")
    charge, refund = await store.list_usage(USER_ID)
    assert charge["credits_used"] == Decimal("2")
    assert refund["credits_used"] == Decimal("-2")
    assert refund["reason"] == "generation_failed"
    assert metrics.get_counter("credits.refunded") == 2


# ── Reservation ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reservation_success_keeps_charge(store, ledger):
    async with ledger.reservation(USER_ID, "scene_video_generation", 2) as held:
        assert held.cost == Decimal("10")
        assert held.balance_after == Decimal("90")

    assert await balance_of(store) == Decimal("90")
    assert len(store.usage) == 1


@pytest.mark.asyncio
async def test_reservation_refunds_adapter_failure(store, ledger):
    with pytest.raises(AdapterFailure):
        async with ledger.reservation(USER_ID, "scene_image_generation"):
            raise AdapterFailure("image", "timeout")

    assert await balance_of(store) == Decimal("100")
    assert [r["reason"] for r in store.usage] == [None, "generation_failed"]


@pytest.mark.asyncio
async def test_reservation_refunds_unexpected_error_as_internal(store, ledger):
    with pytest.raises(RuntimeError):
        async with ledger.reservation(USER_ID, "scene_image_generation"):
            raise RuntimeError("database went away")

    assert await balance_of(store) == Decimal("100")
    assert store.usage[-1]["reason"] == "internal_error"


@pytest.mark.asyncio
async def test_reservation_refunds_on_cancellation(store, ledger):
    with pytest.raises(asyncio.CancelledError):
        async with ledger.reservation(USER_ID, "scene_regeneration"):
            raise asyncio.CancelledError()

    assert await balance_of(store) == Decimal("100")


@pytest.mark.asyncio
async def test_reservation_insufficient_runs_nothing(store, ledger):
    store.balances[USER_ID]["credits_remaining"] = Decimal("1")
    entered = False

    with pytest.raises(InsufficientCreditsError):
        async with ledger.reservation(USER_ID, "scene_image_generation"):
            entered = True

    assert not entered
    assert await balance_of(store) == Decimal("1")
    assert store.usage == []


@pytest.mark.asyncio
async def test_zero_cost_reservation_skips_ledger(store, ledger):
    async with ledger.reservation(USER_ID, "script_generation", 0) as held:
        assert held.cost == 0

    assert await balance_of(store) == Decimal("100")
    assert store.usage == []


# ── Backfill ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_balance_backfilled_from_plan():
    store = MemoryStore()
    store.add_plan("pro", Decimal("500"))
    store.add_user("u-plan", plan_id="pro")
    ledger = CreditLedger(store)

    assert await ledger.get_available("u-plan") == Decimal("500")


@pytest.mark.asyncio
async def test_balance_backfilled_with_default_without_plan():
    store = MemoryStore()
    store.add_user("u-free")
    ledger = CreditLedger(store)

    await ledger.deduct("u-free", "ai_text_chat")

    assert await balance_of(store, "u-free") == DEFAULT_FREE_CREDITS - 1


@pytest.mark.asyncio
async def test_backfill_all_creates_missing_balances(store, ledger):
    store.add_user("u-a")
    store.add_user("u-b")

    summary = await ledger.backfill_all()

    assert summary["created"] == 2
    assert summary["failed"] == []
    assert sorted(summary["user_ids"]) == ["u-a", "u-b"]
    assert await ledger.backfill_all() == {"created": 0, "failed": [], "user_ids": []}
