from . import fal
from . import openrouter
from .pipeline.adapters import IMAGE, PROMPT, SCENE, SCRIPT, VIDEO, GenerationAdapter


class ProviderFactory:
    @staticmethod
    def get_adapter(capability: str) -> GenerationAdapter:
        # Text goes to OpenRouter, media to fal.ai
        if capability == SCRIPT:
            return openrouter.ScriptAdapter()
        if capability == SCENE:
            return openrouter.SceneAdapter()
        if capability == PROMPT:
            return openrouter.PromptAdapter()
        if capability == IMAGE:
            return fal.ImageAdapter()
        if capability == VIDEO:
            return fal.VideoAdapter()
        raise ValueError(f"No adapter for capability: {capability}")

    @staticmethod
    def default_adapters() -> dict[str, GenerationAdapter]:
        return {cap: ProviderFactory.get_adapter(cap) for cap in (SCRIPT, SCENE, PROMPT, IMAGE, VIDEO)}

    @staticmethod
    def catalog_fetchers():
        return {
            "openrouter": openrouter.fetch_models,
            "fal": fal.fetch_models,
        }

    @staticmethod
    def list_providers() -> list[dict]:
        return [
            {**openrouter.PROVIDER_INFO, "is_enabled": openrouter.is_configured()},
            {**fal.PROVIDER_INFO, "is_enabled": fal.is_configured()},
        ]
