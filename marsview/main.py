"""
Mars View - Main FastAPI Application
Rover manifests and photos served through the tiered cache and retrying client
"""
import re
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from marsview import api_client
from marsview.cache import CacheMaintenance, get_tiered_cache
from marsview.resilience import ApiError, ErrorCategory, QuotaExceededError

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Mars View"

# ErrorCategory -> HTTP status returned to our own callers
ERROR_STATUS = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.AUTH_ERROR: 403,
    ErrorCategory.CLIENT_ERROR: 400,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.QUOTA_EXCEEDED: 429,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    maintenance = CacheMaintenance(get_tiered_cache())
    maintenance.start()
    try:
        yield
    finally:
        maintenance.stop()


app = FastAPI(
    title=APP_NAME,
    description="NASA Mars rover data with tiered caching",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    status = ERROR_STATUS.get(exc.category, 502)
    headers = {}
    if isinstance(exc, QuotaExceededError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=status,
        content={"category": exc.category.value, "message": exc.message},
        headers=headers,
    )


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "source": "nasa-mars-photos"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


@app.get("/cache/stats")
def cache_stats():
    """Get cache statistics."""
    return api_client.get_cache_stats()


@app.get("/api/status")
def api_status():
    """Quota usage and request statistics."""
    return api_client.get_api_status()


@app.post("/cache/invalidate")
def invalidate_cache(
    pattern: str = Query(..., min_length=1),
    regex: bool = Query(False, description="Treat pattern as a regular expression"),
):
    """Invalidate cache entries whose key matches the pattern."""
    if regex:
        try:
            matcher = re.compile(pattern)
        except re.error as e:
            raise HTTPException(status_code=400, detail=f"Invalid regex: {e}")
        removed = get_tiered_cache().invalidate(matcher)
    else:
        removed = api_client.invalidate_cache(pattern)
    return {"pattern": pattern, "removed": removed}


@app.post("/cache/optimize")
def optimize_cache():
    """Run cache optimization now."""
    return get_tiered_cache().optimize()


@app.get("/rovers/{rover}/manifest")
def rover_manifest(rover: str):
    """Mission manifest for a rover."""
    return api_client.get_rover_manifest(rover)


@app.get("/rovers/{rover}/photos")
def rover_photos(
    rover: str,
    sol: Optional[int] = Query(None, ge=0),
    earth_date: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    camera: Optional[str] = None,
):
    """Photos by sol or by Earth date (exactly one is required)."""
    if (sol is None) == (earth_date is None):
        raise HTTPException(status_code=422, detail="Provide exactly one of sol or earth_date")
    if sol is not None:
        return api_client.get_photos_for_sol(rover, sol, camera)
    return api_client.get_photos_for_date(rover, earth_date, camera)


@app.get("/rovers/{rover}/photos/range")
def rover_photos_range(
    rover: str,
    start_sol: int = Query(..., ge=0),
    end_sol: int = Query(..., ge=0),
    max_per_sol: int = Query(10, ge=1, le=100),
):
    """Photos for a span of sols; per-sol failures are reported inline."""
    if end_sol - start_sol > 50:
        raise HTTPException(status_code=422, detail="Range is limited to 50 sols")
    return {
        "rover": rover,
        "sols": api_client.get_photos_for_sol_range(rover, start_sol, end_sol, max_per_sol),
    }


@app.get("/rovers/{rover}/latest")
def rover_latest(rover: str):
    """Most recent photos for a rover."""
    return api_client.get_latest_photos(rover)
