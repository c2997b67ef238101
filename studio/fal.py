"""
fal.ai integration: scene images (Flux) and scene videos (Kling), plus the
curated model catalog.

fal.ai has no public listing API, so the catalog is a fixed list.
Images use the synchronous endpoint; video goes through the queue and is
polled until it completes or the adapter timeout cuts it off.
"""

import os
import asyncio
import logging
from typing import Any

import httpx

from .backoff import request_with_backoff
from .pipeline.adapters import IMAGE, VIDEO, GenerationAdapter
from .pipeline.models import GenerationResult

logger = logging.getLogger(__name__)

FAL_KEY = os.getenv("FAL_KEY") or os.getenv("FAL_API_KEY", "")
FAL_RUN_BASE = "https://fal.run"
FAL_QUEUE_BASE = "https://queue.fal.run"

DEFAULT_IMAGE_MODEL = "fal-ai/flux/schnell"
KLING_TEXT_TO_VIDEO = "fal-ai/kling-video/v2.5-turbo/pro/text-to-video"
KLING_IMAGE_TO_VIDEO = "fal-ai/kling-video/v2.5-turbo/pro/image-to-video"

IMAGE_SIZE = "portrait_16_9"  # vertical shorts
VIDEO_ASPECT_RATIO = "9:16"

POLL_INTERVAL = 5  # seconds
MAX_POLL_ATTEMPTS = 60

PROVIDER_INFO = {
    "id": "fal",
    "name": "fal.ai",
    "description": "Specialised image and video generation models",
    "website": "https://fal.ai",
    "capabilities": ["image", "video", "audio"],
}


def _model(id: str, name: str, capability: str, billing_type: str, unit_price: float, credits: int) -> dict:
    price_key = "per_image" if billing_type == "per-image" else "per_second"
    return {
        "id": id,
        "name": name,
        "provider": "fal",
        "capabilities": [capability],
        "pricing": {price_key: unit_price, "billing_type": billing_type, "estimated_credits_per_use": credits},
    }


FAL_KNOWN_MODELS = [
    # ── Image ──
    _model("fal-ai/flux/schnell", "Flux Schnell", "image", "per-image", 0.003, 1),
    _model("fal-ai/flux/dev", "Flux Dev", "image", "per-image", 0.025, 3),
    _model("fal-ai/flux-pro", "Flux Pro", "image", "per-image", 0.05, 5),
    _model("fal-ai/flux-pro/v1.1", "Flux Pro 1.1", "image", "per-image", 0.04, 4),
    _model("fal-ai/stable-diffusion-v3-medium", "Stable Diffusion 3 Medium", "image", "per-image", 0.035, 4),
    _model("fal-ai/recraft-v3", "Recraft V3", "image", "per-image", 0.04, 4),
    _model("fal-ai/ideogram/v2", "Ideogram V2", "image", "per-image", 0.08, 8),
    _model("fal-ai/creative-upscaler", "Creative Upscaler", "image", "per-image", 0.02, 2),
    _model("fal-ai/clarity-upscaler", "Clarity Upscaler", "image", "per-image", 0.02, 2),
    # ── Video ──
    _model(KLING_TEXT_TO_VIDEO, "Kling 2.5 Turbo (Text-to-Video)", "video", "per-second", 0.10, 5),
    _model(KLING_IMAGE_TO_VIDEO, "Kling 2.5 Turbo (Image-to-Video)", "video", "per-second", 0.10, 5),
    _model("fal-ai/minimax-video/video-01-live", "MiniMax Video-01 Live", "video", "per-second", 0.05, 3),
    _model("fal-ai/luma-dream-machine", "Luma Dream Machine", "video", "per-second", 0.15, 8),
    _model("fal-ai/runway-gen3/turbo/image-to-video", "Runway Gen-3 Turbo", "video", "per-second", 0.12, 6),
    # ── Audio ──
    _model("fal-ai/wizper", "Wizper (Speech-to-Text)", "audio", "per-second", 0.01, 1),
]


def is_configured() -> bool:
    return bool(FAL_KEY)


def _headers() -> dict:
    return {"Authorization": f"Key {FAL_KEY}", "Content-Type": "application/json"}


async def fetch_models() -> tuple[dict, list[dict]]:
    """Curated catalog; returned even without a key so the admin UI can show it."""
    if not is_configured():
        logger.warning("FAL_KEY not set; catalog is display-only")
    return {**PROVIDER_INFO, "is_enabled": is_configured()}, [dict(m) for m in FAL_KNOWN_MODELS]


def _failure(e: Exception) -> GenerationResult:
    if isinstance(e, httpx.HTTPStatusError):
        return GenerationResult.fail("http_error", f"fal.ai {e.response.status_code}: {e.response.text[:300]}")
    if isinstance(e, httpx.RequestError):
        return GenerationResult.fail("network_error", str(e))
    return GenerationResult.fail("invalid_response", str(e))


# ── Image ────────────────────────────────────────────────────────────────────

class ImageAdapter(GenerationAdapter):
    capability = IMAGE
    provider = "fal"
    timeout_seconds = 90

    async def generate(self, payload: dict[str, Any]) -> GenerationResult:
        if not is_configured():
            return GenerationResult.fail("not_configured", "FAL_KEY not set")
        model = payload.get("model") or DEFAULT_IMAGE_MODEL
        body = {
            "prompt": payload["prompt"],
            "image_size": IMAGE_SIZE,
            "num_images": 1,
            "enable_safety_checker": True,
        }
        if model == DEFAULT_IMAGE_MODEL:
            body["num_inference_steps"] = 4
        if payload.get("negative_prompt"):
            body["negative_prompt"] = payload["negative_prompt"]

        try:
            response = await request_with_backoff(
                "POST", f"{FAL_RUN_BASE}/{model}", provider="fal.ai", timeout=60, headers=_headers(), json=body,
            )
            images = response.json().get("images") or []
            if not images or not images[0].get("url"):
                raise ValueError("fal.ai returned no image")
        except (httpx.HTTPError, ValueError) as e:
            return _failure(e)

        image = images[0]
        logger.info(f"fal.ai image ready: {image['url'][:80]}")
        return GenerationResult.ok(image_url=image["url"], width=image.get("width"), height=image.get("height"))


# ── Video ────────────────────────────────────────────────────────────────────

class VideoAdapter(GenerationAdapter):
    capability = VIDEO
    provider = "fal"
    timeout_seconds = POLL_INTERVAL * MAX_POLL_ATTEMPTS + 30

    async def generate(self, payload: dict[str, Any]) -> GenerationResult:
        if not is_configured():
            return GenerationResult.fail("not_configured", "FAL_KEY not set")
        image_url = payload.get("image_url")
        model = payload.get("model") or (KLING_IMAGE_TO_VIDEO if image_url else KLING_TEXT_TO_VIDEO)
        body = {
            "prompt": payload.get("prompt") or "",
            "duration": "10" if (payload.get("duration") or 5) > 5 else "5",
            "aspect_ratio": VIDEO_ASPECT_RATIO,
        }
        if image_url:
            body["image_url"] = image_url

        try:
            video_url = await self._run_queued(model, body)
        except (httpx.HTTPError, ValueError) as e:
            return _failure(e)
        return GenerationResult.ok(video_url=video_url)

    async def _run_queued(self, model: str, body: dict) -> str:
        async with httpx.AsyncClient(timeout=30) as client:
            submit = await request_with_backoff(
                "POST", f"{FAL_QUEUE_BASE}/{model}", provider="fal.ai", client=client, headers=_headers(), json=body,
            )
            request_id = submit.json().get("request_id")
            if not request_id:
                raise ValueError(f"fal.ai submit returned no request_id: {submit.text[:200]}")
            logger.info(f"fal.ai video submitted: {model} request_id={request_id}")

            for attempt in range(MAX_POLL_ATTEMPTS):
                await asyncio.sleep(POLL_INTERVAL)
                result = await client.get(f"{FAL_QUEUE_BASE}/{model}/requests/{request_id}", headers=_headers())
                if result.status_code == 202:
                    continue
                result.raise_for_status()
                video = result.json().get("video") or {}
                if not video.get("url"):
                    raise ValueError(f"fal.ai video completed without a URL: {result.text[:200]}")
                logger.info(f"fal.ai video ready after {attempt + 1} polls")
                return video["url"]

        raise ValueError(f"fal.ai video not ready after {MAX_POLL_ATTEMPTS} polls")
