import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .pipeline import project_router, scene_router
from .pipeline.poller import POLLER_ENABLED, StatusPoller
from .pipeline.project_service import get_service

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())

    poller = None
    if POLLER_ENABLED:
        poller = StatusPoller(get_service)
        poller.start()
    else:
        logger.info("Status poller disabled; clients drive /scenes/{id}/status")
    yield
    logger.info("Worker shutting down...")
    if poller:
        poller.stop()


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(project_router)
app.include_router(scene_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "store_backend": os.environ.get("STORE_BACKEND", "supabase"),
        "media_backend": os.environ.get("MEDIA_BACKEND", "supabase"),
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "poller_enabled": POLLER_ENABLED,
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
