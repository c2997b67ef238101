"""
Tests for the provider adapters, the invoke wrapper and HTTP backoff.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from studio import backoff, fal, metrics, openrouter
from studio.pipeline.adapters import SCRIPT, GenerationAdapter, invoke
from studio.pipeline.models import GenerationResult
from studio.provider_factory import ProviderFactory


# ── invoke() ─────────────────────────────────────────────────────────────────

class _SlowAdapter(GenerationAdapter):
    capability = SCRIPT
    provider = "slow"
    timeout_seconds = 0.01

    async def generate(self, payload):
        await asyncio.sleep(1)
        return GenerationResult.ok()


class _BrokenAdapter(GenerationAdapter):
    capability = SCRIPT
    provider = "broken"

    async def generate(self, payload):
        raise KeyError("scenes")


@pytest.mark.asyncio
async def test_invoke_turns_timeout_into_failure():
    result = await invoke(_SlowAdapter(), {})

    assert not result.success
    assert result.error_kind == "timeout"
    assert metrics.get_counter("generation.failure.script") == 1


@pytest.mark.asyncio
async def test_invoke_turns_exception_into_failure():
    result = await invoke(_BrokenAdapter(), {})

    assert not result.success
    assert result.error_kind == "adapter_error"
    assert metrics.get_snapshot()["error_patterns"] == {"adapter.script:adapter_error": 1}


# ── OpenRouter ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_openrouter_not_configured(monkeypatch):
    monkeypatch.setattr(openrouter, "OPENROUTER_API_KEY", "")

    result = await openrouter.ScriptAdapter().generate({"model": "x/y", "premise": "p"})

    assert result.error_kind == "not_configured"


@pytest.mark.asyncio
async def test_script_adapter_normalises_reply(monkeypatch):
    monkeypatch.setattr(openrouter, "OPENROUTER_API_KEY", "key")
    chat = AsyncMock(return_value={
        "title": "T",
        "synopsis": "S",
        "scenes": [{"narration": "n", "visual_desc": "v", "duration": 5}, "junk"],
    })
    monkeypatch.setattr(openrouter, "_chat", chat)

    result = await openrouter.ScriptAdapter().generate({"model": "x/y", "premise": "A heist", "tone_id": "tense"})

    assert result.success
    assert result.artifact["title"] == "T"
    assert result.artifact["scenes"] == [{"narration": "n", "visual_desc": "v", "duration": 5}]
    model, _, user_prompt = chat.await_args.args
    assert model == "x/y"
    assert "Premise: A heist" in user_prompt
    assert "Tone: tense" in user_prompt


@pytest.mark.asyncio
async def test_script_adapter_rejects_reply_without_scenes(monkeypatch):
    monkeypatch.setattr(openrouter, "OPENROUTER_API_KEY", "key")
    monkeypatch.setattr(openrouter, "_chat", AsyncMock(return_value={"title": "T", "scenes": []}))

    result = await openrouter.ScriptAdapter().generate({"model": "x/y", "premise": "p"})

    assert result.error_kind == "invalid_response"


@pytest.mark.asyncio
async def test_scene_adapter_maps_http_error(monkeypatch):
    monkeypatch.setattr(openrouter, "OPENROUTER_API_KEY", "key")
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    error = httpx.HTTPStatusError("boom", request=request, response=httpx.Response(500, text="down", request=request))
    monkeypatch.setattr(openrouter, "_chat", AsyncMock(side_effect=error))

    result = await openrouter.SceneAdapter().generate({
        "model": "x/y",
        "scene": {"order_index": 0, "narration": "n"},
        "scenes": [],
    })

    assert result.error_kind == "http_error"
    assert "500" in result.message


@pytest.mark.asyncio
async def test_prompt_adapter_keeps_usable_prompts(monkeypatch):
    monkeypatch.setattr(openrouter, "OPENROUTER_API_KEY", "key")
    chat = AsyncMock(return_value={"prompts": [
        {"order": 0, "image_prompt": "lighthouse at dusk, 9:16", "negative_prompt": "text"},
        {"order": "1", "image_prompt": "bottle on sand"},
        {"order": 2},
        {"image_prompt": "no order"},
    ]})
    monkeypatch.setattr(openrouter, "_chat", chat)

    result = await openrouter.PromptAdapter().generate({
        "model": "x/y",
        "premise": "A keeper",
        "style_id": "noir",
        "scenes": [{"order": 0, "narration": "n0", "visual_desc": "v0", "duration": 5}],
    })

    assert result.artifact["prompts"] == [
        {"order": 0, "image_prompt": "lighthouse at dusk, 9:16", "negative_prompt": "text"},
        {"order": 1, "image_prompt": "bottle on sand", "negative_prompt": None},
    ]
    model, system, user_prompt = chat.await_args.args
    assert system == openrouter.PROMPT_SYSTEM_PROMPT
    assert "Visual style: noir" in user_prompt
    assert "- order 0: n0 [v0] (5s)" in user_prompt


@pytest.mark.asyncio
async def test_prompt_adapter_rejects_reply_without_prompts(monkeypatch):
    monkeypatch.setattr(openrouter, "OPENROUTER_API_KEY", "key")
    monkeypatch.setattr(openrouter, "_chat", AsyncMock(return_value={"prompts": [{"order": 0}]}))

    result = await openrouter.PromptAdapter().generate({"model": "x/y", "scenes": []})

    assert result.error_kind == "invalid_response"


def test_normalise_openrouter_model():
    model = openrouter.normalise_model({
        "id": "acme/vision-1",
        "name": "Acme Vision",
        "context_length": 128000,
        "architecture": {"input_modalities": ["text", "image"], "output_modalities": ["text"]},
        "pricing": {"prompt": "0", "completion": "0"},
        "top_provider": {"max_completion_tokens": 4096},
    })

    assert model["capabilities"] == ["text", "vision"]
    assert model["context_window"] == 128000
    assert model["max_output_tokens"] == 4096
    assert model["pricing"]["estimated_credits_per_use"] == 1


@pytest.mark.asyncio
async def test_openrouter_catalog_empty_without_key(monkeypatch):
    monkeypatch.setattr(openrouter, "OPENROUTER_API_KEY", "")

    info, models = await openrouter.fetch_models()

    assert info["is_enabled"] is False
    assert models == []


# ── fal.ai ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fal_catalog_lists_image_and_video():
    info, models = await fal.fetch_models()

    assert info["id"] == "fal"
    capabilities = {c for m in models for c in m["capabilities"]}
    assert {"image", "video"} <= capabilities


@pytest.mark.asyncio
async def test_image_adapter_posts_vertical_request(monkeypatch):
    monkeypatch.setattr(fal, "FAL_KEY", "key")
    response = MagicMock()
    response.json.return_value = {"images": [{"url": "https://fal.media/a.png", "width": 768, "height": 1344}]}
    post = AsyncMock(return_value=response)
    monkeypatch.setattr(fal, "request_with_backoff", post)

    result = await fal.ImageAdapter().generate({"prompt": "a lighthouse", "negative_prompt": "text"})

    assert result.artifact == {"image_url": "https://fal.media/a.png", "width": 768, "height": 1344}
    method, url = post.await_args.args
    body = post.await_args.kwargs["json"]
    assert url == "https://fal.run/fal-ai/flux/schnell"
    assert body["image_size"] == "portrait_16_9"
    assert body["num_inference_steps"] == 4
    assert body["negative_prompt"] == "text"


@pytest.mark.asyncio
async def test_image_adapter_without_images_is_invalid(monkeypatch):
    monkeypatch.setattr(fal, "FAL_KEY", "key")
    response = MagicMock()
    response.json.return_value = {"images": []}
    monkeypatch.setattr(fal, "request_with_backoff", AsyncMock(return_value=response))

    result = await fal.ImageAdapter().generate({"prompt": "a lighthouse"})

    assert result.error_kind == "invalid_response"


@pytest.mark.asyncio
async def test_video_adapter_not_configured(monkeypatch):
    monkeypatch.setattr(fal, "FAL_KEY", "")

    result = await fal.VideoAdapter().generate({"image_url": "https://fal.media/a.png"})

    assert result.error_kind == "not_configured"


def test_factory_maps_every_capability():
    adapters = ProviderFactory.default_adapters()

    assert {cap: a.provider for cap, a in adapters.items()} == {
        "script": "openrouter",
        "scene": "openrouter",
        "prompt": "openrouter",
        "image": "fal",
        "video": "fal",
    }
    with pytest.raises(ValueError):
        ProviderFactory.get_adapter("audio")


# ── Backoff ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_backoff_retries_gateway_errors(monkeypatch):
    monkeypatch.setattr(backoff, "BASE_DELAY", 0)
    monkeypatch.setattr(backoff, "JITTER_MAX", 0)
    statuses = [503, 429, 200]

    def handler(request):
        return httpx.Response(statuses.pop(0), json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        response = await backoff.request_with_backoff("GET", "https://api.test/x", provider="test", client=client)

    assert response.status_code == 200
    assert statuses == []


@pytest.mark.asyncio
async def test_backoff_does_not_retry_client_errors(monkeypatch):
    monkeypatch.setattr(backoff, "BASE_DELAY", 0)
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": "bad"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await backoff.request_with_backoff("POST", "https://api.test/x", provider="test", client=client)

    assert len(calls) == 1


def test_parse_json_text_handles_code_fences():
    assert backoff.parse_json_text('{"a": 1}') == {"a": 1}
    assert backoff.parse_json_text('```json\n{"a": 2}\n```') == {"a": 2}
    with pytest.raises(ValueError):
        backoff.parse_json_text("not json")
