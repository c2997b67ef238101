"""
FastAPI routes for the shorts pipeline.

Caller identity arrives in X-User-Id (the gateway's external id) and is
resolved to the internal user id before any operation runs.

Short Endpoints:
  POST   /shorts                                   Create (DRAFT, or SCRIPT_READY with scenes)
  GET    /shorts                                   List caller's shorts
  GET    /shorts/{id}                              Short with ordered scenes
  GET    /shorts/{id}/scenes                       Ordered scenes
  POST   /shorts/{id}/script                       Generate first script
  POST   /shorts/{id}/script/regenerate            Replace all scenes
  POST   /shorts/{id}/approve                      Approve script (idempotent)
  POST   /shorts/{id}/media                        Render missing scene images
  POST   /shorts/{id}/video                        Animate scenes
  POST   /shorts/{id}/publish | /complete
  POST   /shorts/{id}/scenes                       Add scene
  PUT    /shorts/{id}/scenes/order                 Reorder (full permutation)
  POST   /shorts/{id}/scenes/{scene_id}/regenerate AI rewrite of one scene

Scene Endpoints:
  PATCH  /scenes/{id}          Direct edit
  DELETE /scenes/{id}          Remove and re-densify
  POST   /scenes/{id}/image    Regenerate image

Credits:  GET /credits/me
Admin:    GET|PUT /admin/models, DELETE /admin/models/cache,
          GET /admin/providers, GET /admin/providers/{provider}/models,
          POST /admin/backfill-credits
"""

import os
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .. import metrics
from .credits import get_ledger
from .errors import PipelineError
from .model_resolver import get_resolver
from .models import (
    AddSceneRequest,
    CreditBalanceResponse,
    OperationResponse,
    RegenerateImageRequest,
    RegenerateSceneRequest,
    ReorderScenesRequest,
    SaveModelsRequest,
    SceneResponse,
    ShortCreateRequest,
    ShortResponse,
    UpdateSceneRequest,
)
from .orchestrator import get_pipeline
from .store import get_store

logger = logging.getLogger(__name__)

ADMIN_USER_IDS = {u.strip() for u in os.getenv("ADMIN_USER_IDS", "").split(",") if u.strip()}


# ── Identity ─────────────────────────────────────────────────────────────────

async def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Resolve the gateway's caller id to the internal user id."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user_id = await get_store().resolve_user(x_user_id)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user_id


async def admin_user(user_id: str = Depends(current_user)) -> str:
    if user_id not in ADMIN_USER_IDS:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_id


# ── Error mapping ────────────────────────────────────────────────────────────

async def _pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    metrics.inc_counter(f"errors.{exc.code}")
    if exc.status_code >= 500:
        metrics.record_error(request.url.path, exc.code, exc.message)
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    metrics.inc_counter("errors.internal_error")
    metrics.record_error(request.url.path, type(exc).__name__, str(exc))
    logger.error(f"{request.method} {request.url.path} crashed: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "Internal error, please retry"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PipelineError, _pipeline_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)


# ═════════════════════════════════════════════════════════════════════════════
# Short Router
# ═════════════════════════════════════════════════════════════════════════════

short_router = APIRouter(prefix="/shorts", tags=["shorts"])


@short_router.post("", response_model=ShortResponse, status_code=201)
async def create_short(request: ShortCreateRequest, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.create_short")
    return await get_pipeline().create_short(user_id, request)


@short_router.get("", response_model=list[ShortResponse])
async def list_shorts(user_id: str = Depends(current_user)):
    return await get_pipeline().list_shorts(user_id)


@short_router.get("/{short_id}", response_model=ShortResponse)
async def get_short(short_id: str, user_id: str = Depends(current_user)):
    return await get_pipeline().get_short(user_id, short_id)


@short_router.get("/{short_id}/scenes", response_model=list[SceneResponse])
async def list_scenes(short_id: str, user_id: str = Depends(current_user)):
    return await get_pipeline().list_scenes(user_id, short_id)


# ── Lifecycle ────────────────────────────────────────────────────────────────

@short_router.post("/{short_id}/script", response_model=OperationResponse)
async def generate_script(short_id: str, user_id: str = Depends(current_user)):
    """
    Errors:
      - 402: Insufficient credits
      - 409: Short is not a DRAFT
      - 502: Script generation failed (charge refunded, short FAILED)
    """
    metrics.inc_counter("requests.generate_script")
    return await get_pipeline().generate_script(user_id, short_id)


@short_router.post("/{short_id}/script/regenerate", response_model=OperationResponse)
async def regenerate_script(short_id: str, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.regenerate_script")
    return await get_pipeline().regenerate_script(user_id, short_id)


@short_router.post("/{short_id}/approve", response_model=ShortResponse)
async def approve_script(short_id: str, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.approve_script")
    return await get_pipeline().approve_script(user_id, short_id)


@short_router.post("/{short_id}/media", response_model=OperationResponse)
async def generate_media(short_id: str, user_id: str = Depends(current_user)):
    """
    Render every scene without an image. Safe to call again after a partial
    failure: finished scenes are skipped and not re-charged.
    """
    metrics.inc_counter("requests.generate_media")
    return await get_pipeline().generate_media(user_id, short_id)


@short_router.post("/{short_id}/video", response_model=OperationResponse)
async def generate_video(short_id: str, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.generate_video")
    return await get_pipeline().generate_video(user_id, short_id)


@short_router.post("/{short_id}/publish", response_model=ShortResponse)
async def publish_short(short_id: str, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.publish_short")
    return await get_pipeline().publish_short(user_id, short_id)


@short_router.post("/{short_id}/complete", response_model=ShortResponse)
async def complete_short(short_id: str, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.complete_short")
    return await get_pipeline().complete_short(user_id, short_id)


# ── Scene structure ──────────────────────────────────────────────────────────

@short_router.post("/{short_id}/scenes", response_model=OperationResponse, status_code=201)
async def add_scene(short_id: str, request: AddSceneRequest, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.add_scene")
    return await get_pipeline().add_scene(user_id, short_id, request)


@short_router.put("/{short_id}/scenes/order", response_model=ShortResponse)
async def reorder_scenes(short_id: str, request: ReorderScenesRequest, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.reorder_scenes")
    return await get_pipeline().reorder_scenes(user_id, short_id, request.scene_ids)


@short_router.post("/{short_id}/scenes/{scene_id}/regenerate", response_model=OperationResponse)
async def regenerate_scene(
    short_id: str,
    scene_id: str,
    request: Optional[RegenerateSceneRequest] = None,
    user_id: str = Depends(current_user),
):
    metrics.inc_counter("requests.regenerate_scene")
    return await get_pipeline().regenerate_scene(user_id, short_id, scene_id, request.instructions if request else None)


# ═════════════════════════════════════════════════════════════════════════════
# Scene Router
# ═════════════════════════════════════════════════════════════════════════════

scene_router = APIRouter(prefix="/scenes", tags=["scenes"])


@scene_router.patch("/{scene_id}", response_model=SceneResponse)
async def update_scene(scene_id: str, request: UpdateSceneRequest, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.update_scene")
    return await get_pipeline().update_scene(user_id, scene_id, request)


@scene_router.delete("/{scene_id}", response_model=ShortResponse)
async def remove_scene(scene_id: str, user_id: str = Depends(current_user)):
    metrics.inc_counter("requests.remove_scene")
    return await get_pipeline().remove_scene(user_id, scene_id)


@scene_router.post("/{scene_id}/image", response_model=OperationResponse)
async def regenerate_scene_image(
    scene_id: str,
    request: Optional[RegenerateImageRequest] = None,
    user_id: str = Depends(current_user),
):
    metrics.inc_counter("requests.regenerate_scene_image")
    request = request or RegenerateImageRequest()
    return await get_pipeline().regenerate_scene_image(
        user_id, scene_id, prompt=request.prompt, negative_prompt=request.negative_prompt,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Credits Router
# ═════════════════════════════════════════════════════════════════════════════

credits_router = APIRouter(prefix="/credits", tags=["credits"])


@credits_router.get("/me", response_model=CreditBalanceResponse)
async def my_credits(user_id: str = Depends(current_user)):
    """Balance for the caller; created from the plan's credits on first read."""
    row = await get_ledger().get_balance(user_id)
    return CreditBalanceResponse(
        user_id=user_id,
        credits_remaining=float(row["credits_remaining"]),
        last_synced_at=row.get("last_synced_at"),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Admin Router
# ═════════════════════════════════════════════════════════════════════════════

admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(admin_user)])


@admin_router.get("/models")
async def get_default_models():
    return {"models": await get_resolver().get_all_default_models()}


@admin_router.put("/models")
async def save_default_models(request: SaveModelsRequest):
    models = await get_resolver().save_default_models(request.models)
    return {"success": True, "models": models}


@admin_router.delete("/models/cache")
async def invalidate_model_cache():
    resolver = get_resolver()
    resolver.invalidate_model_cache()
    resolver.invalidate_catalog_cache()
    return {"success": True}


@admin_router.get("/providers")
async def list_providers():
    from ..provider_factory import ProviderFactory
    return {
        "providers": ProviderFactory.list_providers(),
        "cache": get_resolver().get_cache_stats(),
    }


@admin_router.get("/providers/{provider}/models")
async def provider_models(provider: str, capability: Optional[str] = None, refresh: bool = False):
    return await get_resolver().get_models_from_provider(provider, force_refresh=refresh, capability=capability)


@admin_router.post("/backfill-credits")
async def backfill_credits():
    metrics.inc_counter("requests.backfill_credits")
    return await get_ledger().backfill_all()
