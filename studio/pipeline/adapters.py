"""
Generation adapter interface.

One implementation per provider and capability. The orchestrator only sees
`GenerationAdapter.generate(payload) -> GenerationResult`; provider types
never leak past this module.

Payloads by capability:
  script  {model, premise, title, synopsis, style_id, tone_id, target_duration}
          → {title, synopsis, scenes: [{narration, visual_desc, visual_prompt?, duration?}]}
  scene   {model, premise, scenes (context), scene, instructions}
          → {narration, visual_desc, visual_prompt?}
  prompt  {model, premise, style_id, tone_id, scenes: [{order, narration, visual_desc, duration}]}
          → {prompts: [{order, image_prompt, negative_prompt?}]}
  image   {model, prompt, negative_prompt}
          → {image_url, width?, height?}
  video   {model, image_url, prompt, duration}
          → {video_url}
"""

import time
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from .. import metrics
from .models import GenerationResult

logger = logging.getLogger(__name__)

SCRIPT = "script"
SCENE = "scene"
PROMPT = "prompt"
IMAGE = "image"
VIDEO = "video"
CAPABILITIES = (SCRIPT, SCENE, PROMPT, IMAGE, VIDEO)

DEFAULT_TIMEOUT_SECONDS = 180


class GenerationAdapter(ABC):
    """Wraps one external provider call and returns a terminal result."""

    capability: str = ""
    provider: str = ""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @abstractmethod
    async def generate(self, payload: dict[str, Any]) -> GenerationResult:
        ...


async def invoke(adapter: GenerationAdapter, payload: dict[str, Any]) -> GenerationResult:
    """
    Call `adapter` with its own timeout and normalise every outcome.

    A timeout or an exception escaping the adapter is reported as a failed
    result, the same as a provider-side error.
    """
    capability = adapter.capability
    start = time.time()
    try:
        result = await asyncio.wait_for(adapter.generate(payload), timeout=adapter.timeout_seconds)
    except asyncio.TimeoutError:
        result = GenerationResult.fail("timeout", f"{adapter.provider} {capability} timed out after {adapter.timeout_seconds}s")
    except Exception as e:
        logger.error(f"{adapter.provider} {capability} adapter raised: {e}", exc_info=True)
        result = GenerationResult.fail("adapter_error", str(e))

    metrics.record_latency(f"adapter.{capability}", (time.time() - start) * 1000)
    if result.success:
        metrics.inc_counter(f"generation.success.{capability}")
    else:
        metrics.inc_counter(f"generation.failure.{capability}")
        metrics.record_error(f"adapter.{capability}", result.error_kind or "unknown", result.message or "")
        logger.warning(f"{adapter.provider} {capability} failed: {result.error_kind} {result.message}")
    return result
