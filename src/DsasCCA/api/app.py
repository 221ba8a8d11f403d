"""FastAPI application serving the cached activity catalogue.

Routes read from Redis first and fall back to the reconciliation engine on a
miss, so every upstream fetch funnels through the same credential machinery
as the background sweeps.

Usage:
    from DsasCCA.api import create_app

    app = create_app()            # builds services from load_config() on startup
    app = create_app(services=s)  # injected services; no startup work
"""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from DsasCCA.cache import entries
from DsasCCA.config import AppConfig, load_config
from DsasCCA.logging_utils import setup_logging
from DsasCCA.services import Services, build_services

logger = logging.getLogger(__name__)

ACTIVITY_ID_PATTERN = re.compile(r"^\d{1,4}$")
ACADEMIC_YEAR_PATTERN = re.compile(r"^\d{4}/\d{4}$")

INDEX_TEXT = "<br/>".join(
    [
        "Welcome to the DSAS CCA API!",
        "GET /v1/activity/list",
        "GET /v1/activity/list?category=",
        "GET /v1/activity/list?academicYear=",
        "GET /v1/activity/list?grade=",
        "GET /v1/activity/category",
        "GET /v1/activity/academicYear",
        "GET /v1/activity/:activityId",
        "GET /v1/staffs",
    ]
)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _services(request: Request) -> Services:
    return request.app.state.services


def _has_credentials(services: Services) -> bool:
    if services.username and services.password:
        return True
    logger.error("API username or password not configured.")
    return False


def _grade_bounds(record: Dict[str, Any]) -> Optional[tuple[int, int]]:
    grades = record.get("grades") or {}
    try:
        return int(grades.get("min")), int(grades.get("max"))
    except (TypeError, ValueError):
        return None


async def _servable_records(services: Services) -> List[Dict[str, Any]]:
    records = await services.cache.all_activities()
    return [record for record in records.values() if entries.is_servable(record)]


def _count_by(records: List[Dict[str, Any]], field: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for record in records:
        value = record.get(field)
        if value:
            counts[value] = counts.get(value, 0) + 1
    return counts


def create_app(
    config: Optional[AppConfig] = None, services: Optional[Services] = None
) -> FastAPI:
    """Create the API application.

    Args:
        config: Configuration used when services are built at startup;
            loaded from the environment when omitted
        services: Pre-built services; when given, startup skips construction,
            the Redis check and the background scheduler

    Returns:
        Configured FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services is not None:
            app.state.services = services
            yield
            return

        cfg = config
        setup_logging(
            level=cfg.logging.level,
            log_dir=Path(cfg.logging.log_dir) if cfg.logging.log_dir else None,
            max_log_size_mb=cfg.logging.max_log_size_mb,
        )
        built = build_services(cfg)
        try:
            await built.cache.check_connection()
        except Exception:
            logger.critical("Failed to connect to Redis. Server will not start.")
            await built.aclose()
            raise
        app.state.services = built
        built.scheduler.start()
        try:
            yield
        finally:
            await built.aclose()

    if config is None:
        config = services.config if services is not None else load_config()

    app = FastAPI(title="DSAS CCA API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return INDEX_TEXT

    @app.get("/v1/activity/list")
    async def list_activities(
        request: Request,
        category: Optional[str] = None,
        academicYear: Optional[str] = None,
        grade: Optional[str] = None,
    ):
        if academicYear is not None and not ACADEMIC_YEAR_PATTERN.match(academicYear):
            return _error(400, "Invalid academicYear format. Expected format: YYYY/YYYY")

        valid_grade: Optional[int] = None
        if grade is not None:
            try:
                valid_grade = int(grade)
            except ValueError:
                valid_grade = None
            if valid_grade is None or not 0 < valid_grade <= 12:
                return _error(400, "Invalid grade parameter. Must be a number between 1 and 12.")

        logger.info(
            f"Activity list requested: category={category!r} academicYear={academicYear!r} grade={valid_grade}"
        )
        try:
            records = await _servable_records(_services(request))
        except Exception as exc:
            logger.error(f"Error generating activity list: {exc}")
            return _error(500, "An internal server error occurred while generating activity list.")

        categories = {r["category"] for r in records if r.get("category")}
        years = {r["academicYear"] for r in records if r.get("academicYear")}
        if category and category not in categories:
            return _error(
                400,
                "Invalid category parameter. Category not found.",
                availableCategories=sorted(categories),
            )
        if academicYear and academicYear not in years:
            return _error(
                400,
                "Invalid academicYear parameter. Academic year not found.",
                availableAcademicYears=sorted(years),
            )

        listing: Dict[str, Dict[str, str]] = {}
        for record in records:
            if not record.get("id") or not record.get("name"):
                continue
            if category and record.get("category") != category:
                continue
            if academicYear and record.get("academicYear") != academicYear:
                continue
            if valid_grade is not None:
                bounds = _grade_bounds(record)
                if bounds is None or not bounds[0] <= valid_grade <= bounds[1]:
                    continue
            listing[record["id"]] = {"name": record["name"], "photo": record.get("photo") or ""}

        logger.info(f"Returning {len(listing)} activities")
        return listing

    @app.get("/v1/activity/category")
    async def list_categories(request: Request):
        try:
            records = await _servable_records(_services(request))
        except Exception as exc:
            logger.error(f"Error generating category list: {exc}")
            return _error(500, "An internal server error occurred while generating category list.")
        return _count_by(records, "category")

    @app.get("/v1/activity/academicYear")
    async def list_academic_years(request: Request):
        try:
            records = await _servable_records(_services(request))
        except Exception as exc:
            logger.error(f"Error generating academic year list: {exc}")
            return _error(
                500, "An internal server error occurred while generating academic year list."
            )
        return _count_by(records, "academicYear")

    @app.get("/v1/activity/{activity_id}")
    async def get_activity(activity_id: str, request: Request):
        if not ACTIVITY_ID_PATTERN.match(activity_id):
            return _error(400, "Invalid Activity ID format.")
        svc = _services(request)
        if not _has_credentials(svc):
            return _error(500, "Server configuration error.")

        try:
            cached = await svc.cache.get_activity(activity_id)
            if entries.is_servable(cached):
                logger.info(f"Cache HIT for activity {activity_id}")
                return {**cached, entries.CACHE: "HIT"}

            logger.info(f"Cache MISS for activity {activity_id}; fetching")
            record = await svc.reconciler.refresh_activity(activity_id)
        except Exception as exc:
            logger.error(f"Error serving activity {activity_id}: {exc}")
            return _error(500, "An internal server error occurred.", cache="ERROR")

        if entries.is_error(record):
            return JSONResponse(status_code=500, content={**record, entries.CACHE: "ERROR"})
        if entries.is_empty_source(record):
            return _error(404, f"Activity {activity_id} not found.", **record, cache="MISS")
        return {**record, entries.CACHE: "MISS"}

    @app.get("/v1/staffs")
    async def get_staffs(request: Request):
        svc = _services(request)
        if not _has_credentials(svc):
            return _error(500, "Server configuration error.")

        try:
            cached = await svc.cache.get_staff()
            if cached and cached.get(entries.LAST_CHECK):
                logger.info("Cache HIT for staffs")
                return {**cached, entries.CACHE: "HIT"}

            logger.info("Cache MISS for staffs; fetching")
            staff = await svc.reconciler.refresh_staff_if_due(force=True)
        except Exception as exc:
            logger.error(f"Error serving staffs: {exc}")
            return _error(
                500, "An internal server error occurred while fetching staff data.", cache="ERROR"
            )

        if not staff:
            return _error(404, "Could not retrieve base data for staff details.", cache="MISS")
        return {**staff, entries.CACHE: "MISS"}

    return app
