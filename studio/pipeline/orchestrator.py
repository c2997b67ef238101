"""
ShortPipeline: the short state machine and its scene operations.

Every billable step runs inside `CreditLedger.reservation()`:

    validate → deduct → adapter call → commit artifacts
                                    ↘ failure: refund, short/scene untouched

Lifecycle:
  DRAFT ─generate_script→ GENERATING_SCRIPT → SCRIPT_READY ─approve→ SCRIPT_APPROVED
    ─generate_media→ GENERATING_IMAGES → IMAGES_READY ─generate_video→
    GENERATING_VIDEO → VIDEO_READY ─publish→ PUBLISHED ─complete→ COMPLETED
  Any GENERATING_* state can fall to FAILED; FAILED resumes media/video or
  takes a regenerated script. Media only resumes once the script was approved.

Media generation settles each scene on its own: a scene that fails refunds
only its own charge, scenes that already have an image are skipped, so a
repeated call finishes the batch without re-charging.
"""

import os
import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from .adapters import IMAGE, PROMPT, SCENE, SCRIPT, VIDEO, GenerationAdapter, invoke
from .credits import CreditLedger
from .errors import (
    AdapterFailure,
    ConflictError,
    InsufficientCreditsError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    ValidationError,
)
from .feature_costs import compute_cost, script_model_credits
from .model_resolver import ModelResolver, get_resolver
from .models import (
    DEFAULT_SCENE_DURATION,
    DEFAULT_TARGET_DURATION,
    IN_FLIGHT_STATUSES,
    MAX_SCENE_DURATION,
    MIN_SCENE_DURATION,
    AddSceneRequest,
    GenerationResult,
    OperationResponse,
    SceneResponse,
    ShortCreateRequest,
    ShortResponse,
    ShortStatus,
    UpdateSceneRequest,
    ensure_transition,
)
from .ordering import layout_from_permutation, layout_with_insert, layout_without, resequence
from .store import ShortStore, get_store, now_iso, to_decimal

logger = logging.getLogger(__name__)

MEDIA_CONCURRENCY = int(os.getenv("MEDIA_CONCURRENCY", "3"))
SCRIPT_MODEL_FEATURE = "agent_scriptwriter"
PROMPT_MODEL_FEATURE = "agent_prompt_engineer"
IMAGE_MODEL_FEATURE = "ai_image"
VIDEO_MODEL_FEATURE = "ai_video"

S = ShortStatus

# Statuses where every scene already has its image; generate_media is a no-op
MEDIA_DONE_STATUSES = frozenset({S.IMAGES_READY, S.VIDEO_READY, S.PUBLISHED, S.COMPLETED})
VIDEO_DONE_STATUSES = frozenset({S.VIDEO_READY, S.PUBLISHED, S.COMPLETED})


# ── Row → response ───────────────────────────────────────────────────────────

def _scene_to_response(row: dict) -> SceneResponse:
    return SceneResponse(
        id=row["id"],
        short_id=row["short_id"],
        order=row["order_index"],
        narration=row.get("narration") or "",
        visual_desc=row.get("visual_desc") or "",
        visual_prompt=row.get("visual_prompt"),
        negative_prompt=row.get("negative_prompt"),
        duration=row.get("duration") or DEFAULT_SCENE_DURATION,
        image_url=row.get("image_url"),
        image_width=row.get("image_width"),
        image_height=row.get("image_height"),
        video_url=row.get("video_url"),
        error_message=row.get("error_message"),
    )


def _short_to_response(row: dict, scenes: Optional[list[dict]] = None) -> ShortResponse:
    """Convert a short row (plus its ordered scene rows) to a ShortResponse."""
    return ShortResponse(
        id=row["id"],
        user_id=row["user_id"],
        title=row.get("title"),
        premise=row.get("premise") or "",
        synopsis=row.get("synopsis"),
        style_id=row.get("style_id"),
        tone_id=row.get("tone_id"),
        ai_model=row.get("ai_model"),
        target_duration=row.get("target_duration") or DEFAULT_TARGET_DURATION,
        status=row["status"],
        script_version=row.get("script_version") or 1,
        credits_used=float(to_decimal(row.get("credits_used"))),
        error_message=row.get("error_message"),
        scenes=[_scene_to_response(s) for s in (scenes or [])],
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _check_duration(duration: Optional[int]) -> int:
    if duration is None:
        return DEFAULT_SCENE_DURATION
    if not MIN_SCENE_DURATION <= duration <= MAX_SCENE_DURATION:
        raise ValidationError(
            f"Scene duration must be between {MIN_SCENE_DURATION} and {MAX_SCENE_DURATION} seconds, got {duration}"
        )
    return duration


def _clamp_duration(value: Any) -> int:
    """AI-produced durations are clamped into range rather than rejected."""
    try:
        duration = int(value)
    except (TypeError, ValueError):
        return DEFAULT_SCENE_DURATION
    return max(MIN_SCENE_DURATION, min(MAX_SCENE_DURATION, duration))


def build_visual_prompt(scene: dict, short: dict) -> str:
    """Image prompt for a scene that has no explicit visual_prompt."""
    parts = [scene.get("visual_desc") or scene.get("narration") or short.get("premise") or ""]
    if short.get("style_id"):
        parts.append(f"Style: {short['style_id']}")
    if short.get("tone_id"):
        parts.append(f"Mood: {short['tone_id']}")
    parts.append("Vertical 9:16 composition, cinematic lighting, highly detailed")
    return ". ".join(p.strip().rstrip(".") for p in parts if p and p.strip())


class ShortPipeline:
    """
    Orchestrates shorts for one process.

    Usage:
        pipeline = ShortPipeline()
        short = await pipeline.create_short(user_id, ShortCreateRequest(premise="..."))
        await pipeline.generate_script(user_id, short.id)
        await pipeline.approve_script(user_id, short.id)
        await pipeline.generate_media(user_id, short.id)
    """

    def __init__(
        self,
        store: Optional[ShortStore] = None,
        ledger: Optional[CreditLedger] = None,
        resolver: Optional[ModelResolver] = None,
        adapters: Optional[dict[str, GenerationAdapter]] = None,
        media_concurrency: int = MEDIA_CONCURRENCY,
    ):
        self._store = store
        self.ledger = ledger or CreditLedger(store)
        self._resolver = resolver
        self._adapters = adapters
        self.media_concurrency = max(1, media_concurrency)

    @property
    def store(self) -> ShortStore:
        return self._store or get_store()

    @property
    def resolver(self) -> ModelResolver:
        return self._resolver or get_resolver()

    @property
    def adapters(self) -> dict[str, GenerationAdapter]:
        if self._adapters is None:
            from ..provider_factory import ProviderFactory
            self._adapters = ProviderFactory.default_adapters()
        return self._adapters

    # ── Loading / status ─────────────────────────────────────────────────

    async def _load_short(self, user_id: str, short_id: str) -> dict:
        short = await self.store.get_short(short_id)
        if short is None or short["user_id"] != user_id:
            raise NotFoundError(f"Short {short_id} not found")
        return short

    async def _load_scene(self, user_id: str, scene_id: str, short_id: Optional[str] = None) -> tuple[dict, dict]:
        scene = await self.store.get_scene(scene_id)
        if scene is None or (short_id is not None and scene["short_id"] != short_id):
            raise NotFoundError(f"Scene {scene_id} not found")
        short = await self._load_short(user_id, scene["short_id"])
        return short, scene

    async def _respond(self, short_id: str) -> ShortResponse:
        short = await self.store.get_short(short_id)
        return _short_to_response(short, await self.store.list_scenes(short_id))

    async def _set_status(self, short: dict, target: ShortStatus, **fields: Any) -> dict:
        """Table-checked transition, applied only if nobody moved the short meanwhile."""
        ensure_transition(short["status"], target)
        row = await self.store.update_short(
            short["id"], {"status": target.value, **fields}, expected_status=short["status"],
        )
        if row is None:
            raise ConflictError(f"Short {short['id']} changed status while {target.value} was being applied")
        logger.info(f"Short {short['id']} {short['status']} → {target.value}")
        return row

    async def _mark_failed(self, short: dict, message: str) -> None:
        try:
            await self._set_status(short, S.FAILED, error_message=message[:500])
        except PipelineError as e:
            logger.error(f"Could not mark short {short['id']} FAILED: {e}", exc_info=True)

    @staticmethod
    def _ensure_editable(short: dict) -> None:
        if ShortStatus(short["status"]) in IN_FLIGHT_STATUSES:
            raise ConflictError(f"Short {short['id']} is {short['status']}; wait for it to finish")

    async def _script_model(self, short: dict) -> str:
        return short.get("ai_model") or await self.resolver.get_default_model(SCRIPT_MODEL_FEATURE)

    async def _call(self, capability: str, payload: dict) -> GenerationResult:
        return await invoke(self.adapters[capability], payload)

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_short(self, user_id: str, short_id: str) -> ShortResponse:
        short = await self._load_short(user_id, short_id)
        return _short_to_response(short, await self.store.list_scenes(short_id))

    async def list_shorts(self, user_id: str) -> list[ShortResponse]:
        return [_short_to_response(row) for row in await self.store.list_shorts(user_id)]

    async def list_scenes(self, user_id: str, short_id: str) -> list[SceneResponse]:
        await self._load_short(user_id, short_id)
        return [_scene_to_response(s) for s in await self.store.list_scenes(short_id)]

    # ── Create ───────────────────────────────────────────────────────────

    async def create_short(self, user_id: str, request: ShortCreateRequest) -> ShortResponse:
        """DRAFT, or SCRIPT_READY when the caller supplies the scenes."""
        if request.target_duration is not None and request.target_duration <= 0:
            raise ValidationError("target_duration must be positive")
        supplied = sorted(enumerate(request.scenes), key=lambda pair: (pair[1].order, pair[0]))
        durations = [_check_duration(scene.duration) for _, scene in supplied]

        short_id = str(uuid4())
        scene_ids = [str(uuid4()) for _ in supplied]
        layout = resequence(scene_ids)
        scenes = [
            {
                "id": scene_id,
                "short_id": short_id,
                "order_index": layout[scene_id],
                "narration": scene.narration or "",
                "visual_desc": scene.visual_desc or "",
                "duration": duration,
            }
            for scene_id, (_, scene), duration in zip(scene_ids, supplied, durations)
        ]
        status = S.SCRIPT_READY if scenes else S.DRAFT
        row = {
            "id": short_id,
            "user_id": user_id,
            "title": request.title,
            "premise": request.premise,
            "synopsis": request.synopsis,
            "style_id": request.style_id,
            "tone_id": request.tone_id,
            "ai_model": request.ai_model,
            "target_duration": request.target_duration or DEFAULT_TARGET_DURATION,
            "status": status.value,
            "script_version": 1,
            "credits_used": Decimal("0"),
        }
        await self.store.insert_short(row, scenes)
        logger.info(f"Short {short_id} created for {user_id} in {status.value} with {len(scenes)} scene(s)")
        return await self._respond(short_id)

    # ── Script ───────────────────────────────────────────────────────────

    def _script_scene_rows(self, short_id: str, raw_scenes: list[dict]) -> list[dict]:
        return [
            {
                "id": str(uuid4()),
                "short_id": short_id,
                "order_index": index,
                "narration": str(raw.get("narration") or ""),
                "visual_desc": str(raw.get("visual_desc") or ""),
                "visual_prompt": raw.get("visual_prompt") or None,
                "duration": _clamp_duration(raw.get("duration")),
            }
            for index, raw in enumerate(raw_scenes)
        ]

    def _script_payload(self, short: dict, model: str) -> dict:
        return {
            "model": model,
            "premise": short.get("premise"),
            "title": short.get("title"),
            "synopsis": short.get("synopsis"),
            "style_id": short.get("style_id"),
            "tone_id": short.get("tone_id"),
            "target_duration": short.get("target_duration") or DEFAULT_TARGET_DURATION,
        }

    def _script_fields(self, artifact: dict, **fields: Any) -> dict:
        for key in ("title", "synopsis"):
            if artifact.get(key):
                fields[key] = artifact[key]
        return fields

    async def generate_script(self, user_id: str, short_id: str) -> OperationResponse:
        """First script for a DRAFT short. FAILED on adapter failure, charge refunded."""
        short = await self._load_short(user_id, short_id)
        ensure_transition(short["status"], S.GENERATING_SCRIPT)
        model = await self._script_model(short)
        credits = script_model_credits(model)

        details = {"short_id": short_id, "model": model, "premise": short.get("premise")}
        async with self.ledger.reservation(user_id, "script_generation", credits, details) as held:
            short = await self._set_status(short, S.GENERATING_SCRIPT)
            try:
                result = await self._call(SCRIPT, self._script_payload(short, model))
                if not result.success:
                    raise AdapterFailure(SCRIPT, result.error_kind or "unknown", result.message)
                scenes = self._script_scene_rows(short_id, result.artifact["scenes"])
                ensure_transition(short["status"], S.SCRIPT_READY)
                await self.store.replace_scenes(
                    short_id,
                    scenes,
                    self._script_fields(result.artifact, status=S.SCRIPT_READY.value, error_message=None, approved_at=None),
                    expected_status=short["status"],
                )
            except BaseException as e:
                await self._mark_failed(short, str(e) or type(e).__name__)
                raise
            if held.cost:
                await self.store.add_short_credits(short_id, held.cost)

        logger.info(f"Short {short_id} script generated with {model}: {len(scenes)} scenes, {held.cost} credits")
        return OperationResponse(short=await self._respond(short_id), credits_used=float(held.cost))

    async def regenerate_script(self, user_id: str, short_id: str) -> OperationResponse:
        """
        Replace every scene with a freshly generated set.

        Nothing is written until the adapter succeeds; on failure the charge
        is refunded and the short keeps its status and scenes.
        A short that changed status during the call is a ConflictError,
        refunded the same way.
        """
        short = await self._load_short(user_id, short_id)
        ensure_transition(short["status"], S.SCRIPT_READY)
        model = await self._script_model(short)
        credits = script_model_credits(model)

        details = {"short_id": short_id, "model": model, "script_version": short.get("script_version") or 1}
        async with self.ledger.reservation(user_id, "script_regeneration", credits, details) as held:
            result = await self._call(SCRIPT, self._script_payload(short, model))
            if not result.success:
                raise AdapterFailure(SCRIPT, result.error_kind or "unknown", result.message)
            scenes = self._script_scene_rows(short_id, result.artifact["scenes"])
            await self.store.replace_scenes(
                short_id,
                scenes,
                self._script_fields(
                    result.artifact,
                    status=S.SCRIPT_READY.value,
                    script_version=(short.get("script_version") or 1) + 1,
                    error_message=None,
                    approved_at=None,
                ),
                expected_status=short["status"],
            )
            if held.cost:
                await self.store.add_short_credits(short_id, held.cost)

        logger.info(f"Short {short_id} {short['status']} → SCRIPT_READY (script regenerated, {len(scenes)} scenes)")
        return OperationResponse(short=await self._respond(short_id), credits_used=float(held.cost))

    async def approve_script(self, user_id: str, short_id: str) -> ShortResponse:
        """No cost. Approving an approved short returns it unchanged."""
        short = await self._load_short(user_id, short_id)
        if short["status"] == S.SCRIPT_APPROVED.value:
            return await self._respond(short_id)
        if not await self.store.list_scenes(short_id):
            raise ValidationError("Cannot approve a script with no scenes")
        await self._set_status(short, S.SCRIPT_APPROVED, approved_at=now_iso())
        return await self._respond(short_id)

    # ── Media ────────────────────────────────────────────────────────────

    async def _settle_batch(
        self,
        user_id: str,
        short: dict,
        pending: list[dict],
        feature: str,
        in_flight: ShortStatus,
        ready: ShortStatus,
        render: Callable[[dict], Awaitable[None]],
        prepare: Optional[Callable[[list[dict]], Awaitable[None]]] = None,
    ) -> OperationResponse:
        """
        Run `render` for every pending scene, each inside its own reservation.
        `prepare` runs once, unbilled, after the short enters `in_flight`.

        All scenes settled → `ready`. Any failure → FAILED, with the
        successful scenes' artifacts and charges kept.
        """
        short_id = short["id"]
        await self.ledger.validate(user_id, feature, len(pending))
        short = await self._set_status(short, in_flight, error_message=None)

        semaphore = asyncio.Semaphore(self.media_concurrency)
        unit_cost = compute_cost(feature)

        async def settle(scene: dict) -> None:
            async with semaphore:
                details = {"short_id": short_id, "scene_id": scene["id"]}
                async with self.ledger.reservation(user_id, feature, 1, details):
                    await render(scene)
                await self.store.add_short_credits(short_id, unit_cost)

        try:
            if prepare is not None:
                await prepare(pending)
            outcomes = await asyncio.gather(*(settle(s) for s in pending), return_exceptions=True)
        except BaseException as e:
            await self._mark_failed(short, str(e) or type(e).__name__)
            raise

        failures = [(scene, o) for scene, o in zip(pending, outcomes) if isinstance(o, BaseException)]
        succeeded = len(pending) - len(failures)
        spent = unit_cost * succeeded

        if not failures:
            await self._set_status(short, ready)
            return OperationResponse(short=await self._respond(short_id), credits_used=float(spent))

        failed_ids = [scene["id"] for scene, _ in failures]
        message = f"{len(failures)} of {len(pending)} scene(s) failed"
        await self._mark_failed(short, message)

        errors = [o for _, o in failures]
        unexpected = [e for e in errors if not isinstance(e, PipelineError)]
        if unexpected:
            raise unexpected[0]
        if all(isinstance(e, InsufficientCreditsError) for e in errors):
            raise errors[0]
        adapter_errors = [e for e in errors if isinstance(e, AdapterFailure)]
        if not adapter_errors:
            raise next(e for e in errors if not isinstance(e, InsufficientCreditsError))
        raise AdapterFailure(
            adapter_errors[0].capability,
            "partial_failure",
            f"Short {short_id}: {message}",
            details={"failed_scene_ids": failed_ids, "succeeded": succeeded, "credits_used": float(spent)},
        )

    async def _engineer_prompts(self, short: dict, pending: list[dict]) -> None:
        """
        Fill in an image prompt for every pending scene that has none.

        The prompt engineer runs once for the batch. Scenes it skips, or the
        whole batch when it fails, get the template prompt instead.
        """
        needs = [s for s in pending if not s.get("visual_prompt")]
        if not needs:
            return
        result = await self._call(PROMPT, {
            "model": await self.resolver.get_default_model(PROMPT_MODEL_FEATURE),
            "premise": short.get("premise"),
            "style_id": short.get("style_id"),
            "tone_id": short.get("tone_id"),
            "scenes": [
                {
                    "order": s["order_index"],
                    "narration": s.get("narration") or "",
                    "visual_desc": s.get("visual_desc") or "",
                    "duration": s.get("duration") or DEFAULT_SCENE_DURATION,
                }
                for s in needs
            ],
        })
        engineered: dict[int, dict] = {}
        if result.success:
            engineered = {p["order"]: p for p in result.artifact.get("prompts", [])}
        else:
            logger.warning(
                f"Short {short['id']}: prompt engineer failed ({result.error_kind}: {result.message}); "
                f"using template prompts"
            )

        for scene in needs:
            entry = engineered.get(scene["order_index"], {})
            fields = {"visual_prompt": entry.get("image_prompt") or build_visual_prompt(scene, short)}
            if entry.get("negative_prompt"):
                fields["negative_prompt"] = entry["negative_prompt"]
            await self.store.update_scene(scene["id"], fields)
            scene.update(fields)
        logger.info(f"Short {short['id']}: {len(engineered)} of {len(needs)} image prompt(s) engineered")

    async def generate_media(self, user_id: str, short_id: str) -> OperationResponse:
        """Render an image for every scene that lacks one, 2 credits per scene."""
        short = await self._load_short(user_id, short_id)
        scenes = await self.store.list_scenes(short_id)
        if not scenes:
            raise ValidationError("Short has no scenes to render")
        pending = [s for s in scenes if not s.get("image_url")]
        if not pending and ShortStatus(short["status"]) in MEDIA_DONE_STATUSES:
            return OperationResponse(short=_short_to_response(short, scenes), credits_used=0)
        ensure_transition(short["status"], S.GENERATING_IMAGES)
        if short["status"] == S.FAILED.value and not short.get("approved_at"):
            # FAILED before approval: the script has to be regenerated and approved first
            raise InvalidTransitionError(short["status"], S.GENERATING_IMAGES.value)
        model = await self.resolver.get_default_model(IMAGE_MODEL_FEATURE)

        async def render(scene: dict) -> None:
            prompt = scene.get("visual_prompt") or build_visual_prompt(scene, short)
            result = await self._call(IMAGE, {
                "model": model,
                "prompt": prompt,
                "negative_prompt": scene.get("negative_prompt"),
            })
            if not result.success:
                await self.store.update_scene(scene["id"], {"error_message": result.message or result.error_kind})
                raise AdapterFailure(IMAGE, result.error_kind or "unknown", result.message, details={"scene_id": scene["id"]})
            updated = await self.store.update_scene(scene["id"], {
                "image_url": result.artifact["image_url"],
                "image_width": result.artifact.get("width"),
                "image_height": result.artifact.get("height"),
                "visual_prompt": prompt,
                "error_message": None,
            })
            if updated is None:
                raise NotFoundError(f"Scene {scene['id']} was removed during image generation")

        async def prepare(batch: list[dict]) -> None:
            await self._engineer_prompts(short, batch)

        logger.info(f"Short {short_id}: rendering {len(pending)} of {len(scenes)} scene image(s) with {model}")
        return await self._settle_batch(
            user_id, short, pending, "scene_image_generation", S.GENERATING_IMAGES, S.IMAGES_READY, render, prepare,
        )

    async def generate_video(self, user_id: str, short_id: str) -> OperationResponse:
        """Animate every scene image that has no video yet, 5 credits per scene."""
        short = await self._load_short(user_id, short_id)
        scenes = await self.store.list_scenes(short_id)
        if not scenes:
            raise ValidationError("Short has no scenes to animate")
        missing_images = [s["id"] for s in scenes if not s.get("image_url")]
        if missing_images:
            raise ValidationError(
                "Every scene needs an image before video generation",
                details={"scene_ids": missing_images},
            )
        pending = [s for s in scenes if not s.get("video_url")]
        if not pending and ShortStatus(short["status"]) in VIDEO_DONE_STATUSES:
            return OperationResponse(short=_short_to_response(short, scenes), credits_used=0)
        ensure_transition(short["status"], S.GENERATING_VIDEO)
        model = await self.resolver.get_default_model(VIDEO_MODEL_FEATURE)

        async def render(scene: dict) -> None:
            result = await self._call(VIDEO, {
                "model": model,
                "image_url": scene["image_url"],
                "prompt": scene.get("visual_prompt") or build_visual_prompt(scene, short),
                "duration": scene.get("duration") or DEFAULT_SCENE_DURATION,
            })
            if not result.success:
                await self.store.update_scene(scene["id"], {"error_message": result.message or result.error_kind})
                raise AdapterFailure(VIDEO, result.error_kind or "unknown", result.message, details={"scene_id": scene["id"]})
            updated = await self.store.update_scene(
                scene["id"], {"video_url": result.artifact["video_url"], "error_message": None},
            )
            if updated is None:
                raise NotFoundError(f"Scene {scene['id']} was removed during video generation")

        logger.info(f"Short {short_id}: animating {len(pending)} of {len(scenes)} scene(s) with {model}")
        return await self._settle_batch(
            user_id, short, pending, "scene_video_generation", S.GENERATING_VIDEO, S.VIDEO_READY, render,
        )

    async def publish_short(self, user_id: str, short_id: str) -> ShortResponse:
        short = await self._load_short(user_id, short_id)
        await self._set_status(short, S.PUBLISHED)
        return await self._respond(short_id)

    async def complete_short(self, user_id: str, short_id: str) -> ShortResponse:
        short = await self._load_short(user_id, short_id)
        await self._set_status(short, S.COMPLETED)
        return await self._respond(short_id)

    # ── Scene-level AI ───────────────────────────────────────────────────

    async def _rewrite_scene(self, short: dict, scene: dict, instructions: Optional[str]) -> dict:
        """Ask the scene adapter for new narration/visuals; raises AdapterFailure."""
        context = await self.store.list_scenes(short["id"])
        result = await self._call(SCENE, {
            "model": await self._script_model(short),
            "premise": short.get("premise"),
            "scenes": context,
            "scene": scene,
            "instructions": instructions,
        })
        if not result.success:
            raise AdapterFailure(SCENE, result.error_kind or "unknown", result.message)
        fields = {
            "narration": result.artifact.get("narration") or "",
            "visual_desc": result.artifact.get("visual_desc") or "",
        }
        if result.artifact.get("visual_prompt"):
            fields["visual_prompt"] = result.artifact["visual_prompt"]
        return fields

    async def regenerate_scene(
        self,
        user_id: str,
        short_id: str,
        scene_id: str,
        instructions: Optional[str] = None,
    ) -> OperationResponse:
        """Rewrite one scene's narration and visuals (0.5 credits)."""
        short, scene = await self._load_scene(user_id, scene_id, short_id)
        self._ensure_editable(short)

        details = {"short_id": short_id, "scene_id": scene_id, "instructions": instructions or ""}
        async with self.ledger.reservation(user_id, "scene_regeneration", 1, details) as held:
            fields = await self._rewrite_scene(short, scene, instructions)
            updated = await self.store.update_scene(scene_id, fields)
            if updated is None:
                raise NotFoundError(f"Scene {scene_id} was removed during regeneration")
            await self.store.add_short_credits(short_id, held.cost)

        logger.info(f"Scene {scene_id} of short {short_id} regenerated")
        return OperationResponse(scene=_scene_to_response(updated), credits_used=float(held.cost))

    async def regenerate_scene_image(
        self,
        user_id: str,
        scene_id: str,
        prompt: Optional[str] = None,
        negative_prompt: Optional[str] = None,
    ) -> OperationResponse:
        """Replace one scene's image (2 credits). The old image stays on failure."""
        short, scene = await self._load_scene(user_id, scene_id)
        self._ensure_editable(short)
        prompt = prompt or scene.get("visual_prompt") or build_visual_prompt(scene, short)
        negative_prompt = negative_prompt if negative_prompt is not None else scene.get("negative_prompt")

        details = {"short_id": short["id"], "scene_id": scene_id, "prompt": prompt}
        async with self.ledger.reservation(user_id, "scene_image_generation", 1, details) as held:
            result = await self._call(IMAGE, {
                "model": await self.resolver.get_default_model(IMAGE_MODEL_FEATURE),
                "prompt": prompt,
                "negative_prompt": negative_prompt,
            })
            if not result.success:
                raise AdapterFailure(IMAGE, result.error_kind or "unknown", result.message, details={"scene_id": scene_id})
            updated = await self.store.update_scene(scene_id, {
                "image_url": result.artifact["image_url"],
                "image_width": result.artifact.get("width"),
                "image_height": result.artifact.get("height"),
                "visual_prompt": prompt,
                "negative_prompt": negative_prompt,
                "error_message": None,
            })
            if updated is None:
                raise NotFoundError(f"Scene {scene_id} was removed during image generation")
            await self.store.add_short_credits(short["id"], held.cost)

        logger.info(f"Scene {scene_id} image regenerated")
        return OperationResponse(scene=_scene_to_response(updated), credits_used=float(held.cost))

    # ── Scene structure ──────────────────────────────────────────────────

    async def add_scene(self, user_id: str, short_id: str, request: AddSceneRequest) -> OperationResponse:
        """
        Insert a scene at `request.order`, shifting later scenes down.

        Orders past the end append. With generate_with_ai the narration and
        visuals come from the scene adapter, billed as a scene regeneration.
        """
        short = await self._load_short(user_id, short_id)
        self._ensure_editable(short)
        duration = _check_duration(request.duration)

        scene_id = str(uuid4())
        current_ids = [s["id"] for s in await self.store.list_scenes(short_id)]
        layout = layout_with_insert(current_ids, scene_id, request.order)
        row = {
            "id": scene_id,
            "short_id": short_id,
            "order_index": layout[scene_id],
            "narration": request.narration or "",
            "visual_desc": request.visual_desc or "",
            "duration": duration,
        }

        if not request.generate_with_ai:
            inserted = await self.store.insert_scene(short_id, row, layout)
            logger.info(f"Scene {scene_id} added to short {short_id} at {row['order_index']}")
            return OperationResponse(scene=_scene_to_response(inserted), credits_used=0)

        details = {"short_id": short_id, "instructions": request.ai_instructions or ""}
        async with self.ledger.reservation(user_id, "scene_regeneration", 1, details) as held:
            row.update(await self._rewrite_scene(short, row, request.ai_instructions))
            inserted = await self.store.insert_scene(short_id, row, layout)
            await self.store.add_short_credits(short_id, held.cost)

        logger.info(f"Scene {scene_id} generated and added to short {short_id} at {row['order_index']}")
        return OperationResponse(scene=_scene_to_response(inserted), credits_used=float(held.cost))

    async def update_scene(self, user_id: str, scene_id: str, request: UpdateSceneRequest) -> SceneResponse:
        """Direct field edit, no AI, no cost. Allowed in every status, even mid-generation."""
        _, scene = await self._load_scene(user_id, scene_id)
        fields = request.model_dump(exclude_none=True)
        if "duration" in fields:
            fields["duration"] = _check_duration(fields["duration"])
        if not fields:
            return _scene_to_response(scene)
        updated = await self.store.update_scene(scene_id, fields)
        if updated is None:
            raise NotFoundError(f"Scene {scene_id} not found")
        return _scene_to_response(updated)

    async def remove_scene(self, user_id: str, scene_id: str) -> ShortResponse:
        short, _ = await self._load_scene(user_id, scene_id)
        self._ensure_editable(short)
        ordered = [s["id"] for s in await self.store.list_scenes(short["id"])]
        await self.store.delete_scene(short["id"], scene_id, layout_without(ordered, scene_id))
        logger.info(f"Scene {scene_id} removed from short {short['id']}")
        return await self._respond(short["id"])

    async def reorder_scenes(self, user_id: str, short_id: str, scene_ids: list[str]) -> ShortResponse:
        """`scene_ids` must be exactly the short's scenes, in the new order."""
        short = await self._load_short(user_id, short_id)
        self._ensure_editable(short)
        current = [s["id"] for s in await self.store.list_scenes(short_id)]
        layout = layout_from_permutation(current, scene_ids)
        await self.store.apply_layout(short_id, layout)
        logger.info(f"Short {short_id} scenes reordered")
        return await self._respond(short_id)


_pipeline: Optional[ShortPipeline] = None


def get_pipeline() -> ShortPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = ShortPipeline()
    return _pipeline


def set_pipeline(pipeline: Optional[ShortPipeline]) -> None:
    global _pipeline
    _pipeline = pipeline
