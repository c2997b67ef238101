"""
OpenRouter integration: script and scene text generation, plus the live
model catalog.

- Script: full scene breakdown for a premise (chat completions, JSON reply)
- Scene:  rewrite one scene using the surrounding script as context
- Catalog: GET /models normalised to id / name / capabilities / pricing
"""

import os
import math
import logging
from typing import Any

import httpx

from .backoff import parse_json_text, request_with_backoff
from .pipeline.adapters import PROMPT, SCENE, SCRIPT, GenerationAdapter
from .pipeline.models import GenerationResult

logger = logging.getLogger(__name__)

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"

PROVIDER_INFO = {
    "id": "openrouter",
    "name": "OpenRouter",
    "description": "Unified access to many LLMs (OpenAI, Anthropic, Google, Meta, ...)",
    "website": "https://openrouter.ai",
    "capabilities": ["text", "image", "vision"],
}

SCRIPT_SYSTEM_PROMPT = """You are a scriptwriter for vertical short-form videos.

Break the premise into scenes. Each scene is one narrated beat with a visual.
Return ONLY a JSON object (no markdown) with this EXACT structure:
{
  "title": "short title",
  "synopsis": "one or two sentences",
  "scenes": [
    {"narration": "what the narrator says", "visual_desc": "what the viewer sees",
     "visual_prompt": "detailed image-generation prompt, vertical 9:16", "duration": 5}
  ]
}
Scene durations are whole seconds between 1 and 30 and should add up to
roughly the target duration."""

SCENE_SYSTEM_PROMPT = """You rewrite one scene of a short-form video script.

Keep it consistent with the scenes around it. Return ONLY a JSON object:
{"narration": "...", "visual_desc": "...", "visual_prompt": "..."}"""

PROMPT_SYSTEM_PROMPT = """You are a prompt engineer for an image model.

Write one image-generation prompt per scene. Prompts must be self-contained,
vertical 9:16, and keep characters and setting consistent across scenes.
Return ONLY a JSON object:
{"prompts": [{"order": 0, "image_prompt": "...", "negative_prompt": "..."}]}"""


def is_configured() -> bool:
    return bool(OPENROUTER_API_KEY)


def _headers() -> dict:
    return {
        "Authorization": f"Bearer {OPENROUTER_API_KEY}",
        "Content-Type": "application/json",
    }


async def _chat(model: str, system: str, user: str) -> Any:
    """One chat completion; returns the parsed JSON reply."""
    response = await request_with_backoff(
        "POST",
        f"{OPENROUTER_API_BASE}/chat/completions",
        provider="OpenRouter",
        timeout=120,
        headers=_headers(),
        json={
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "response_format": {"type": "json_object"},
        },
    )
    data = response.json()
    choices = data.get("choices") or []
    if not choices:
        raise ValueError(f"OpenRouter returned no choices: {str(data)[:200]}")
    return parse_json_text(choices[0]["message"]["content"] or "")


def _script_user_prompt(payload: dict) -> str:
    lines = [f"Premise: {payload['premise']}"]
    for label, key in (("Title", "title"), ("Synopsis", "synopsis"), ("Style", "style_id"), ("Tone", "tone_id")):
        if payload.get(key):
            lines.append(f"{label}: {payload[key]}")
    lines.append(f"Target duration: {payload.get('target_duration') or 30} seconds")
    return "\n".join(lines)


def _scene_user_prompt(payload: dict) -> str:
    scene = payload["scene"]
    context = "\n".join(
        f"{s['order_index'] + 1}. {s.get('narration') or ''} [{s.get('visual_desc') or ''}]"
        for s in payload.get("scenes", [])
    )
    lines = [
        f"Premise: {payload.get('premise') or ''}",
        f"Script so far:\n{context}" if context else "Script so far: (empty)",
        f"Rewrite scene {scene.get('order_index', 0) + 1}.",
        f"Current narration: {scene.get('narration') or ''}",
        f"Current visual: {scene.get('visual_desc') or ''}",
    ]
    if payload.get("instructions"):
        lines.append(f"Instructions: {payload['instructions']}")
    return "\n".join(lines)


def _prompt_user_prompt(payload: dict) -> str:
    lines = [f"Premise: {payload.get('premise') or ''}"]
    if payload.get("style_id"):
        lines.append(f"Visual style: {payload['style_id']}")
    if payload.get("tone_id"):
        lines.append(f"Mood: {payload['tone_id']}")
    lines.append("Scenes:")
    for scene in payload["scenes"]:
        lines.append(
            f"- order {scene['order']}: {scene.get('narration') or ''} "
            f"[{scene.get('visual_desc') or ''}] ({scene.get('duration') or 5}s)"
        )
    return "\n".join(lines)


class _OpenRouterAdapter(GenerationAdapter):
    provider = "openrouter"
    timeout_seconds = 150

    async def generate(self, payload: dict[str, Any]) -> GenerationResult:
        if not is_configured():
            return GenerationResult.fail("not_configured", "OPENROUTER_API_KEY not set")
        try:
            reply = await self._call(payload)
        except httpx.HTTPStatusError as e:
            return GenerationResult.fail("http_error", f"OpenRouter {e.response.status_code}: {e.response.text[:300]}")
        except httpx.RequestError as e:
            return GenerationResult.fail("network_error", str(e))
        except (ValueError, KeyError, TypeError) as e:
            return GenerationResult.fail("invalid_response", str(e))
        return self._normalise(reply)

    async def _call(self, payload: dict[str, Any]) -> Any:
        raise NotImplementedError

    def _normalise(self, reply: Any) -> GenerationResult:
        raise NotImplementedError


class ScriptAdapter(_OpenRouterAdapter):
    capability = SCRIPT

    async def _call(self, payload: dict[str, Any]) -> Any:
        return await _chat(payload["model"], SCRIPT_SYSTEM_PROMPT, _script_user_prompt(payload))

    def _normalise(self, reply: Any) -> GenerationResult:
        scenes = reply.get("scenes") if isinstance(reply, dict) else None
        if not scenes or not isinstance(scenes, list):
            return GenerationResult.fail("invalid_response", "Script reply has no scenes")
        return GenerationResult.ok(
            title=reply.get("title"),
            synopsis=reply.get("synopsis"),
            scenes=[s for s in scenes if isinstance(s, dict)],
        )


class SceneAdapter(_OpenRouterAdapter):
    capability = SCENE

    async def _call(self, payload: dict[str, Any]) -> Any:
        return await _chat(payload["model"], SCENE_SYSTEM_PROMPT, _scene_user_prompt(payload))

    def _normalise(self, reply: Any) -> GenerationResult:
        if not isinstance(reply, dict) or not (reply.get("narration") or reply.get("visual_desc")):
            return GenerationResult.fail("invalid_response", "Scene reply has no narration or visual")
        return GenerationResult.ok(
            narration=reply.get("narration") or "",
            visual_desc=reply.get("visual_desc") or "",
            visual_prompt=reply.get("visual_prompt"),
        )


class PromptAdapter(_OpenRouterAdapter):
    """Prompt engineer: one image prompt per scene, keyed by scene order."""

    capability = PROMPT

    async def _call(self, payload: dict[str, Any]) -> Any:
        return await _chat(payload["model"], PROMPT_SYSTEM_PROMPT, _prompt_user_prompt(payload))

    def _normalise(self, reply: Any) -> GenerationResult:
        prompts = reply.get("prompts") if isinstance(reply, dict) else None
        if not isinstance(prompts, list):
            return GenerationResult.fail("invalid_response", "Prompt reply has no prompts")
        cleaned = []
        for entry in prompts:
            if not isinstance(entry, dict) or not entry.get("image_prompt"):
                continue
            try:
                order = int(entry.get("order"))
            except (TypeError, ValueError):
                continue
            cleaned.append({
                "order": order,
                "image_prompt": str(entry["image_prompt"]),
                "negative_prompt": entry.get("negative_prompt") or None,
            })
        if not cleaned:
            return GenerationResult.fail("invalid_response", "Prompt reply has no usable prompts")
        return GenerationResult.ok(prompts=cleaned)


# ── Catalog ──────────────────────────────────────────────────────────────────

def _capabilities(raw: dict) -> list[str]:
    arch = raw.get("architecture") or {}
    inputs = arch.get("input_modalities") or []
    outputs = arch.get("output_modalities") or []
    caps = []
    if "text" in inputs or "text" in outputs:
        caps.append("text")
    if "image" in outputs:
        caps.append("image")
    if "image" in inputs:
        caps.append("vision")
    if "audio" in inputs or "audio" in outputs:
        caps.append("audio")
    return caps or ["text"]


def _pricing(raw: dict) -> dict:
    """Per-token prices → per 1M tokens, plus a rough credits-per-use estimate."""
    pricing = raw.get("pricing") or {}
    try:
        input_per_token = float(pricing.get("prompt") or 0)
        output_per_token = float(pricing.get("completion") or 0)
    except (TypeError, ValueError):
        input_per_token = output_per_token = 0.0
    # ~2K tokens in, 500 out; 1 credit ≈ $0.001
    typical_usd = 2000 * input_per_token + 500 * output_per_token
    return {
        "input_per_1m": input_per_token * 1_000_000,
        "output_per_1m": output_per_token * 1_000_000,
        "billing_type": "token",
        "estimated_credits_per_use": max(1, math.ceil(typical_usd * 1000)),
    }


def normalise_model(raw: dict) -> dict:
    top = raw.get("top_provider") or {}
    return {
        "id": raw["id"],
        "name": raw.get("name") or raw["id"],
        "description": raw.get("description"),
        "provider": "openrouter",
        "capabilities": _capabilities(raw),
        "context_window": raw.get("context_length") or top.get("context_length"),
        "max_output_tokens": top.get("max_completion_tokens"),
        "pricing": _pricing(raw),
    }


async def fetch_models() -> tuple[dict, list[dict]]:
    """Live catalog. Empty list when the key is not configured."""
    info = {**PROVIDER_INFO, "is_enabled": is_configured()}
    if not is_configured():
        logger.warning("OPENROUTER_API_KEY not set; returning empty catalog")
        return info, []

    response = await request_with_backoff(
        "GET",
        f"{OPENROUTER_API_BASE}/models",
        provider="OpenRouter",
        timeout=30,
        headers={"Authorization": f"Bearer {OPENROUTER_API_KEY}", "Accept": "application/json"},
    )
    return info, [normalise_model(m) for m in response.json().get("data", [])]
