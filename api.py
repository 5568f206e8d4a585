"""
MarketRelay HTTP API
FastAPI surface used by the bot front end.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import notifier
from config import PORT_FILE
from dedup import DEFAULT_SESSION, ListingDedupStore
from errors import (
    FatalRecoveryFailure,
    InvalidFilter,
    RelayError,
    SessionNotReady,
)
from image_cache import ImageCache
from pipeline import ListingsPipeline
from recovery import RecoveryOrchestrator
from scheduler import build_scheduler
from schemas import (
    AgeFilterRequest,
    CategoryRequest,
    ClearListingCacheRequest,
    ListingOut,
    ListingsResponse,
    LocationRequest,
    PriceFilterRequest,
    SearchRequest,
    YearFilterRequest,
)

logger = logging.getLogger(__name__)

# Errors the caller can fix; everything else is a server-side failure
CLIENT_ERRORS = (SessionNotReady, InvalidFilter)


def write_port_file(port: int, path: Path = PORT_FILE):
    """Record the bound port so other processes can find the API."""
    try:
        Path(path).write_text(str(port), encoding="utf-8")
        logger.info(f"API port {port} saved to {path}")
    except OSError as e:
        logger.error(f"Could not write port file {path}: {e}")


def remove_port_file(path: Path = PORT_FILE):
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove port file {path}: {e}")


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def create_app(
    orchestrator: RecoveryOrchestrator,
    pipeline: ListingsPipeline,
    dedup: ListingDedupStore,
    images: ImageCache,
    categories: Optional[List[Dict]] = None,
    start_background: bool = True,
    relay_enabled: bool = False,
    port: Optional[int] = None,
    port_file: Optional[Path] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        orchestrator: Owner of the browser session
        pipeline: Listings pipeline bound to the orchestrator
        dedup: Listing dedup store
        images: Image cache
        categories: Category list served by /categories
        start_background: Start the browser and scheduler on startup
        relay_enabled: Also poll and relay listings to Discord
        port: Bound port reported by /port
        port_file: Port-registration file removed on shutdown
    """
    categories = categories if categories is not None else orchestrator.categories

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if start_background:
            dedup.load()
            if not await orchestrator.start():
                logger.error("Browser failed to start; requests will fail until a restart succeeds")
            scheduler = build_scheduler(orchestrator, dedup, images, pipeline, relay_enabled)
            scheduler.start()
            if relay_enabled:
                await asyncio.to_thread(notifier.send_startup_message)
        try:
            yield
        finally:
            logger.info("Shutting down...")
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            try:
                dedup.flush_to_durable()
            except Exception as e:
                logger.error(f"Final dedup flush failed: {e}")
            if start_background:
                await orchestrator.close()
            if port_file is not None:
                remove_port_file(port_file)

    app = FastAPI(title="MarketRelay", lifespan=lifespan)

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        status_code = 400 if isinstance(exc, CLIENT_ERRORS) else 500
        if status_code == 500:
            logger.error(f"{request.url.path} failed: {exc!r}")
        return error_response(status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(400, f"Invalid request: {exc.errors()}")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"{request.url.path} failed unexpectedly: {exc}", exc_info=exc)
        return error_response(500, str(exc))

    @app.get("/status")
    async def status():
        return {
            "success": True,
            "status": orchestrator.snapshot_status(),
            "listings": dict(pipeline.stats),
            "dedup": dedup.stats(),
            "images": images.stats(),
            "categoriesCount": len(categories),
        }

    @app.get("/port")
    async def get_port():
        return {"success": True, "port": port}

    @app.get("/categories")
    async def get_categories():
        return {"success": True, "categories": categories}

    @app.post("/select-category")
    async def select_category(payload: CategoryRequest):
        await orchestrator.select_category(payload.category)
        return {"success": True, "category": payload.category}

    @app.post("/search")
    async def search(payload: SearchRequest):
        await orchestrator.search(payload.query)
        return {"success": True, "query": orchestrator.filters.search_query}

    @app.post("/set-location")
    async def set_location(payload: LocationRequest):
        await orchestrator.set_location(payload.city, payload.radius, payload.latitude, payload.longitude)
        return {
            "success": True,
            "applied": {
                "city": payload.city,
                "radius": payload.radius,
                "latitude": payload.latitude,
                "longitude": payload.longitude,
            },
        }

    @app.post("/set-price-filter")
    async def set_price_filter(payload: PriceFilterRequest):
        await orchestrator.set_price_filter(payload.min_price, payload.max_price)
        return {"success": True, "applied": {"minPrice": payload.min_price, "maxPrice": payload.max_price}}

    @app.post("/set-year-filter")
    async def set_year_filter(payload: YearFilterRequest):
        applied = await orchestrator.set_year_filter(payload.min_year, payload.max_year)
        return {"success": True, "applied": applied, "clientSide": True}

    @app.post("/set-age-filter")
    async def set_age_filter(payload: AgeFilterRequest):
        max_age = await orchestrator.set_age_filter(payload.max_age_minutes)
        return {"success": True, "applied": {"maxAgeMinutes": max_age}}

    @app.get("/listings")
    async def listings(count: int = Query(5, ge=1, le=100), session: str = DEFAULT_SESSION):
        result = await pipeline.run(count, session_id=session)
        response = ListingsResponse(
            items=[ListingOut.from_listing(item) for item in result.items],
            filtered_count=result.filtered_count,
            duplicates_removed=result.duplicates_removed,
            age_filtered_count=result.age_filtered_count,
            image_stats=result.image_stats,
            recovered=result.recovered,
            attempts=result.attempts,
        )
        return response.model_dump(by_alias=True)

    @app.post("/restart-browser")
    async def restart_browser():
        if not await orchestrator.restart_browser():
            raise FatalRecoveryFailure("Browser restart failed")
        return {"success": True, "status": orchestrator.snapshot_status()}

    @app.post("/navigate-to-marketplace")
    async def navigate_to_marketplace():
        await orchestrator.navigate_to_marketplace()
        return {"success": True}

    @app.post("/refresh-page")
    async def refresh_page():
        await orchestrator.refresh_page()
        return {"success": True}

    @app.post("/clear-image-cache")
    async def clear_image_cache():
        async with orchestrator.lock:
            entries = len(images)
            removed = images.clear()
        return {"success": True, "entriesCleared": entries, "filesRemoved": removed}

    @app.post("/clear-listing-cache")
    async def clear_listing_cache(payload: Optional[ClearListingCacheRequest] = None):
        include_sessions = payload.sessions if payload is not None else False
        async with orchestrator.lock:
            cleared = dedup.clear(include_sessions=include_sessions)
        return {"success": True, "cleared": cleared}

    return app
