"""
Pydantic models, enums and the short state machine.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import InvalidTransitionError


# ── Short Status ─────────────────────────────────────────────────────────────

class ShortStatus(str, Enum):
    DRAFT = "DRAFT"
    GENERATING_SCRIPT = "GENERATING_SCRIPT"
    SCRIPT_READY = "SCRIPT_READY"
    SCRIPT_APPROVED = "SCRIPT_APPROVED"
    GENERATING_IMAGES = "GENERATING_IMAGES"
    IMAGES_READY = "IMAGES_READY"
    GENERATING_VIDEO = "GENERATING_VIDEO"
    VIDEO_READY = "VIDEO_READY"
    PUBLISHED = "PUBLISHED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


S = ShortStatus

# X → SCRIPT_READY is the regenerate-script edge; FAILED → GENERATING_* are
# the resume paths for scene-level media retries.
ALLOWED_TRANSITIONS: dict[ShortStatus, frozenset[ShortStatus]] = {
    S.DRAFT: frozenset({S.GENERATING_SCRIPT, S.SCRIPT_READY}),
    S.GENERATING_SCRIPT: frozenset({S.SCRIPT_READY, S.FAILED}),
    S.SCRIPT_READY: frozenset({S.SCRIPT_READY, S.SCRIPT_APPROVED}),
    S.SCRIPT_APPROVED: frozenset({S.SCRIPT_READY, S.GENERATING_IMAGES}),
    S.GENERATING_IMAGES: frozenset({S.IMAGES_READY, S.FAILED}),
    S.IMAGES_READY: frozenset({S.SCRIPT_READY, S.GENERATING_IMAGES, S.GENERATING_VIDEO, S.COMPLETED}),
    S.GENERATING_VIDEO: frozenset({S.VIDEO_READY, S.FAILED}),
    S.VIDEO_READY: frozenset({
        S.SCRIPT_READY, S.GENERATING_IMAGES, S.GENERATING_VIDEO, S.PUBLISHED, S.COMPLETED,
    }),
    S.PUBLISHED: frozenset({S.COMPLETED}),
    S.FAILED: frozenset({S.SCRIPT_READY, S.GENERATING_IMAGES, S.GENERATING_VIDEO}),
    S.COMPLETED: frozenset(),
}

IN_FLIGHT_STATUSES = frozenset({S.GENERATING_SCRIPT, S.GENERATING_IMAGES, S.GENERATING_VIDEO})
ENTRY_STATUSES = frozenset({S.DRAFT, S.SCRIPT_READY})


def can_transition(current: ShortStatus, target: ShortStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(ShortStatus(current), frozenset())


def ensure_transition(current: ShortStatus, target: ShortStatus) -> ShortStatus:
    """Return `target` if the table allows it, else raise InvalidTransitionError."""
    current = ShortStatus(current)
    target = ShortStatus(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
    return target


# ── Scene bounds ─────────────────────────────────────────────────────────────

MIN_SCENE_DURATION = 1
MAX_SCENE_DURATION = 30
DEFAULT_SCENE_DURATION = 5
DEFAULT_TARGET_DURATION = 30


# ── Generation Adapter Result ────────────────────────────────────────────────

class GenerationResult(BaseModel):
    """Normalized outcome of one provider call."""
    success: bool
    artifact: dict[str, Any] = Field(default_factory=dict)
    error_kind: Optional[str] = None  # timeout, http_error, invalid_response, not_configured
    message: Optional[str] = None

    @classmethod
    def ok(cls, **artifact: Any) -> "GenerationResult":
        return cls(success=True, artifact=artifact)

    @classmethod
    def fail(cls, error_kind: str, message: str = "") -> "GenerationResult":
        return cls(success=False, error_kind=error_kind, message=message)


# ── API Request Models ───────────────────────────────────────────────────────

class SceneInput(BaseModel):
    order: int = 0
    narration: Optional[str] = None
    visual_desc: Optional[str] = None
    duration: Optional[int] = None


class ShortCreateRequest(BaseModel):
    """Create a short in DRAFT, or SCRIPT_READY when scenes are supplied."""
    premise: str = Field(..., min_length=1, description="Theme / premise of the short")
    title: Optional[str] = None
    synopsis: Optional[str] = None
    style_id: Optional[str] = None
    tone_id: Optional[str] = None
    ai_model: Optional[str] = None
    target_duration: Optional[int] = None
    scenes: list[SceneInput] = Field(default_factory=list)


class AddSceneRequest(BaseModel):
    order: int
    narration: Optional[str] = None
    visual_desc: Optional[str] = None
    duration: Optional[int] = None
    generate_with_ai: bool = False
    ai_instructions: Optional[str] = None


class UpdateSceneRequest(BaseModel):
    """Direct edit; only the provided fields change."""
    narration: Optional[str] = None
    visual_desc: Optional[str] = None
    visual_prompt: Optional[str] = None
    duration: Optional[int] = None


class RegenerateSceneRequest(BaseModel):
    instructions: Optional[str] = None


class RegenerateImageRequest(BaseModel):
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None


class ReorderScenesRequest(BaseModel):
    scene_ids: list[str]


class SaveModelsRequest(BaseModel):
    models: dict[str, str]


# ── API Response Models ──────────────────────────────────────────────────────

class SceneResponse(BaseModel):
    id: str
    short_id: str
    order: int
    narration: str = ""
    visual_desc: str = ""
    visual_prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    duration: int = DEFAULT_SCENE_DURATION
    image_url: Optional[str] = None
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    video_url: Optional[str] = None
    error_message: Optional[str] = None


class ShortResponse(BaseModel):
    id: str
    user_id: str
    title: Optional[str] = None
    premise: str
    synopsis: Optional[str] = None
    style_id: Optional[str] = None
    tone_id: Optional[str] = None
    ai_model: Optional[str] = None
    target_duration: int = DEFAULT_TARGET_DURATION
    status: ShortStatus
    script_version: int = 1
    credits_used: float = 0
    error_message: Optional[str] = None
    scenes: list[SceneResponse] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class OperationResponse(BaseModel):
    """Result of a billable operation: the touched entity plus what it cost."""
    short: Optional[ShortResponse] = None
    scene: Optional[SceneResponse] = None
    credits_used: float = 0


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits_remaining: float
    last_synced_at: Optional[str] = None
