import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .provider_factory import ProviderFactory
from .pipeline import (
    short_router,
    scene_router,
    credits_router,
    admin_router,
    register_exception_handlers,
)
from .pipeline.cache import get_redis
from .pipeline.store import get_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Shorts service starting up...")
    metrics.set_gauge("start_time", time.time())
    store = get_store()
    logger.info(f"Store: {type(store).__name__}")
    if get_redis() is None:
        logger.info("No Redis; model caches are in-process")
    yield
    logger.info("Shorts service shutting down...")


app = FastAPI(title="Shorts Studio", lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
register_exception_handlers(app)

app.include_router(short_router)
app.include_router(scene_router)
app.include_router(credits_router)
app.include_router(admin_router)


@app.get("/health")
def health_check():
    """Verify the service is running and env vars are configured."""
    return {
        "status": "ok",
        "supabase_configured": bool(os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY")),
        "redis_connected": get_redis() is not None,
        "providers": {p["id"]: p["is_enabled"] for p in ProviderFactory.list_providers()},
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all service metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    uvicorn.run("studio.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
