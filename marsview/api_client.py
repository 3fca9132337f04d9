"""
Live API client for the NASA Mars Rover Photos API
All data fetched through the retrying client with tiered caching and request coalescing
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Iterable, List, Optional

from marsview.cache import get_request_coordinator, get_tiered_cache
from marsview.metrics import get_performance_monitor
from marsview.resilience import get_retrying_client
from config.settings import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("api_client")

BASE_URL = settings.nasa_base_url

SUPPORTED_ROVERS = ("perseverance", "curiosity", "opportunity", "spirit")

# Upper bound on parallel sol fetches in get_photos_for_sol_range
MAX_RANGE_WORKERS = 8


def _normalize_rover(rover: str) -> str:
    return rover.strip().lower()


def _params(**extra: Any) -> Dict[str, Any]:
    """Query parameters with the API key; None values dropped."""
    params = {"api_key": settings.nasa_api_key}
    params.update({k: v for k, v in extra.items() if v is not None})
    return params


def _make_request(
    cache_key: str,
    path: str,
    endpoint_tag: str,
    params: Dict[str, Any],
) -> Any:
    """
    Resolve `cache_key`, fetching `path` on a miss.

    Concurrent calls for the same key share one upstream request; the
    response is cached under the tier its key prefix selects.
    """
    client = get_retrying_client()

    def fetch():
        return client.execute(f"{BASE_URL}/{path}", endpoint_tag, params)

    return get_request_coordinator().resolve(
        cache_key, fetch, use_cache=settings.cache_enabled
    )


def get_rover_manifest(rover: str = "perseverance") -> Dict[str, Any]:
    """Mission manifest: landing/launch dates, max sol, photo counts per sol."""
    rover = _normalize_rover(rover)
    return _make_request(
        cache_key=f"manifest_{rover}",
        path=f"manifests/{rover}",
        endpoint_tag=f"manifest_{rover}",
        params=_params(),
    )


def get_photos_for_sol(rover: str, sol: int, camera: Optional[str] = None) -> Dict[str, Any]:
    """
    Photos taken on a given Martian sol.

    Args:
        rover: Rover name
        sol: Mission sol number
        camera: Camera abbreviation (e.g. "NAVCAM"); all cameras if None
    """
    rover = _normalize_rover(rover)
    return _make_request(
        cache_key=f"photos_{rover}_{sol}_{camera or 'all'}",
        path=f"rovers/{rover}/photos",
        endpoint_tag=f"photos_sol_{rover}",
        params=_params(sol=sol, camera=camera),
    )


def get_photos_for_date(rover: str, earth_date: str, camera: Optional[str] = None) -> Dict[str, Any]:
    """Photos taken on a given Earth date (YYYY-MM-DD)."""
    rover = _normalize_rover(rover)
    return _make_request(
        cache_key=f"photos_date_{rover}_{earth_date}_{camera or 'all'}",
        path=f"rovers/{rover}/photos",
        endpoint_tag=f"photos_date_{rover}",
        params=_params(earth_date=earth_date, camera=camera),
    )


def get_latest_photos(rover: str) -> Dict[str, Any]:
    """Photos from the most recent sol with imagery."""
    rover = _normalize_rover(rover)
    return _make_request(
        cache_key=f"latest_{rover}",
        path=f"rovers/{rover}/latest_photos",
        endpoint_tag=f"latest_{rover}",
        params=_params(),
    )


def get_photos_for_sol_range(
    rover: str,
    start_sol: int,
    end_sol: int,
    max_photos_per_sol: int = 10,
) -> List[Dict[str, Any]]:
    """
    Get photos for every sol in [start_sol, end_sol] in parallel.

    Failures are reported per sol rather than raised.

    Returns:
        List of {"sol", "photos"} or {"sol", "photos": [], "error"}, ordered by sol
    """
    if end_sol < start_sol:
        return []

    sols = list(range(start_sol, end_sol + 1))
    results: Dict[int, Dict[str, Any]] = {}

    with ThreadPoolExecutor(max_workers=min(len(sols), MAX_RANGE_WORKERS)) as executor:
        future_to_sol = {
            executor.submit(get_photos_for_sol, rover, sol): sol
            for sol in sols
        }

        for future in as_completed(future_to_sol):
            sol = future_to_sol[future]
            try:
                data = future.result()
                photos = (data or {}).get("photos", [])
                results[sol] = {"sol": sol, "photos": photos[:max_photos_per_sol]}
            except Exception as e:
                logger.error(f"Error fetching sol {sol} for {rover}: {e}")
                results[sol] = {"sol": sol, "photos": [], "error": str(e)}

    return [results[sol] for sol in sols]


# ===== CACHE MANAGEMENT =====

def warm_cache(rovers: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    """
    Pre-load rover manifests that are not already cached.

    Loads go through the request coordinator, so a warm-up that overlaps a
    regular manifest fetch joins it instead of calling upstream again.

    Returns:
        One result per manifest key ({"key", "success", ...})
    """
    rovers = [_normalize_rover(r) for r in (rovers or SUPPORTED_ROVERS)]
    client = get_retrying_client()
    coordinator = get_request_coordinator()

    def load(key: str) -> Any:
        rover = key[len("manifest_"):]
        return coordinator.resolve(
            key, lambda: client.execute(f"{BASE_URL}/manifests/{rover}", key, _params())
        )

    return get_tiered_cache().warm([f"manifest_{rover}" for rover in rovers], load)


def invalidate_cache(pattern: str) -> int:
    """Invalidate cached entries whose key contains `pattern`."""
    return get_tiered_cache().invalidate(pattern)


def clear_cache() -> int:
    """
    Clear all cached data and forget in-flight request cells.

    Callers already waiting on a fetch still get its result.
    Returns number of entries cleared.
    """
    pending = get_request_coordinator().clear_pending()
    if pending:
        logger.info(f"Dropped {pending} in-flight request cells")
    return get_tiered_cache().clear()


def get_cache_stats() -> Dict[str, Any]:
    """Get comprehensive cache statistics."""
    return {
        "cache": get_tiered_cache().get_stats(),
        "requests": get_request_coordinator().get_stats(),
        "performance": get_performance_monitor().get_report(),
    }


def _mask_key(api_key: str) -> str:
    return api_key[:8] + "..." if api_key else ""


def get_api_status() -> Dict[str, Any]:
    """Quota usage, cache metrics and request stats in one view."""
    client_status = get_retrying_client().get_status()
    return {
        **client_status,
        "api_key": _mask_key(settings.nasa_api_key),
        "cache": get_tiered_cache().get_stats(),
        "requests": get_request_coordinator().get_stats(),
    }
