"""
Shorts Pipeline

Turns a premise into a multi-scene video short:
  Script  → scenes with narration and visuals (OpenRouter)
  Media   → one image per scene (fal.ai Flux), optional video (fal.ai Kling)
  Credits → every AI call is reserved, then committed or refunded
"""

from .orchestrator import ShortPipeline
from .credits import CreditLedger
from .model_resolver import ModelResolver
from .routes import short_router, scene_router, credits_router, admin_router, register_exception_handlers
from .models import ShortStatus

__all__ = [
    "ShortPipeline",
    "CreditLedger",
    "ModelResolver",
    "short_router",
    "scene_router",
    "credits_router",
    "admin_router",
    "register_exception_handlers",
    "ShortStatus",
]
