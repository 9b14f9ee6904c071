"""
Tributestream cache service - status and cache administration API.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI
from pydantic import BaseModel

from tributestream.availability import AvailabilityMonitor
from tributestream.cache import CacheManager, get_cache_manager
from config.settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Tributestream Cache"

# Global availability monitor instance
_monitor: Optional[AvailabilityMonitor] = None


def get_availability_monitor() -> AvailabilityMonitor:
    """Get or create the global availability monitor."""
    global _monitor
    if _monitor is None:
        _monitor = AvailabilityMonitor()
    return _monitor


@asynccontextmanager
async def lifespan(app: FastAPI):
    monitor = get_availability_monitor()
    await monitor.start()
    try:
        yield
    finally:
        monitor.stop()
        await get_cache_manager().aclose()


app = FastAPI(
    title=APP_NAME,
    description="Backend availability and client cache administration",
    version=APP_VERSION,
    lifespan=lifespan,
)


class InvalidateRequest(BaseModel):
    """Tags to invalidate; no tags means everything."""
    tags: List[str] = []


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "environment": settings.environment}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


@app.get("/status/backend")
def backend_status(monitor: AvailabilityMonitor = Depends(get_availability_monitor)):
    """Last known backend availability, without probing."""
    return {**monitor.status.to_dict(), "phase": monitor.phase.value}


@app.post("/status/backend/check")
async def force_backend_check(monitor: AvailabilityMonitor = Depends(get_availability_monitor)):
    """Probe the backend now, resetting the retry cycle."""
    await monitor.force_check()
    return {**monitor.status.to_dict(), "phase": monitor.phase.value}


@app.get("/cache/stats")
def cache_stats(manager: CacheManager = Depends(get_cache_manager)):
    """Cache statistics across the store, responses and loaders."""
    return manager.get_stats()


@app.post("/cache/invalidate")
def invalidate_cache(
    request: InvalidateRequest,
    manager: CacheManager = Depends(get_cache_manager),
):
    """Invalidate cached responses by tag, or all of them."""
    if request.tags:
        removed = manager.responses.invalidate_by_tags(request.tags)
        return {"invalidated": removed, "tags": request.tags}
    removed = manager.responses.invalidate_all()
    return {"invalidated": removed, "tags": []}
