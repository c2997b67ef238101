"""
Pytest configuration and fixtures.

The in-process store and scripted fake adapters stand in for Supabase and
the AI providers.
"""

from decimal import Decimal
from typing import Any, Callable, Optional

import pytest

from studio import metrics
from studio.pipeline.adapters import IMAGE, PROMPT, SCENE, SCRIPT, VIDEO, GenerationAdapter
from studio.pipeline.cache import TTLCache
from studio.pipeline.credits import CreditLedger
from studio.pipeline.memory_store import MemoryStore
from studio.pipeline.model_resolver import ModelResolver
from studio.pipeline.models import GenerationResult
from studio.pipeline.orchestrator import ShortPipeline

USER_ID = "user-1"
EXTERNAL_ID = "ext-1"
OTHER_USER_ID = "user-2"


class FakeAdapter(GenerationAdapter):
    """Returns `result_for(payload)`, or a failure when `fail_when(payload)` is true."""

    provider = "fake"
    timeout_seconds = 5

    def __init__(
        self,
        capability: str,
        result_for: Callable[[dict], GenerationResult],
        fail_when: Optional[Callable[[dict], bool]] = None,
    ):
        self.capability = capability
        self.result_for = result_for
        self.fail_when = fail_when
        self.calls: list[dict] = []

    async def generate(self, payload: dict[str, Any]) -> GenerationResult:
        self.calls.append(payload)
        if self.fail_when is not None and self.fail_when(payload):
            return GenerationResult.fail("http_error", "provider returned 500")
        return self.result_for(payload)


def _script_result(payload: dict) -> GenerationResult:
    return GenerationResult.ok(
        title="The Lighthouse",
        synopsis="A keeper finds a message in a bottle.",
        scenes=[
            {"narration": "Night falls on the coast.", "visual_desc": "Lighthouse at dusk", "duration": 5},
            {"narration": "A bottle washes ashore.", "visual_desc": "Bottle on wet sand", "duration": 6},
            {"narration": "The message is a map.", "visual_desc": "Old map in torchlight", "duration": 45},
        ],
    )


def _scene_result(payload: dict) -> GenerationResult:
    return GenerationResult.ok(
        narration="Rewritten narration",
        visual_desc="Rewritten visual",
        visual_prompt="rewritten prompt, vertical 9:16",
    )


def _prompt_result(payload: dict) -> GenerationResult:
    return GenerationResult.ok(prompts=[
        {"order": s["order"], "image_prompt": f"engineered: {s['visual_desc']}", "negative_prompt": "blurry, text"}
        for s in payload["scenes"]
    ])


def _image_result(payload: dict) -> GenerationResult:
    return GenerationResult.ok(image_url=f"https://cdn.test/{abs(hash(payload['prompt']))}.png", width=768, height=1344)


def _video_result(payload: dict) -> GenerationResult:
    return GenerationResult.ok(video_url=payload["image_url"].replace(".png", ".mp4"))


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    """Fallback store seeded with one user holding 100 credits."""
    s = MemoryStore()
    s.add_user(USER_ID, external_id=EXTERNAL_ID, credits=Decimal("100"))
    s.add_user(OTHER_USER_ID, external_id="ext-2", credits=Decimal("100"))
    return s


@pytest.fixture
def ledger(store):
    return CreditLedger(store)


@pytest.fixture
def resolver(store):
    return ModelResolver(store=store, cache=TTLCache(None), catalogs={})


@pytest.fixture
def adapters():
    return {
        SCRIPT: FakeAdapter(SCRIPT, _script_result),
        SCENE: FakeAdapter(SCENE, _scene_result),
        PROMPT: FakeAdapter(PROMPT, _prompt_result),
        IMAGE: FakeAdapter(IMAGE, _image_result),
        VIDEO: FakeAdapter(VIDEO, _video_result),
    }


@pytest.fixture
def pipeline(store, ledger, resolver, adapters):
    return ShortPipeline(store=store, ledger=ledger, resolver=resolver, adapters=adapters, media_concurrency=2)


async def balance_of(store: MemoryStore, user_id: str = USER_ID) -> Decimal:
    row = await store.get_balance(user_id)
    return row["credits_remaining"]
