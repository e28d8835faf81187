"""Thin FastAPI adapter over the scheduling engine.

There is no authentication here: the caller names its company in the
``X-Company-Id`` header and, optionally, itself in ``X-Actor``.  Every
endpoint parses the body, calls one engine function and returns its result.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .bulk import bulk_create_shifts, duplicate_shifts, validate_conflicts
from .cache import TemplateCache, TemplateFilter
from .database import SessionLocal, init_database
from .errors import InvalidRequestError, SchedulingError
from .generator.api import apply_template_to_batch
from .policy import cache_settings, ensure_default_policy, load_active_policy
from .shifts import create_shift, get_employee_patterns, suggest_shift_times, update_shift
from .templates import create_scheduling_template, list_scheduling_templates

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "SHIFT_PLANNER_LOG_LEVEL"


def configure_logging() -> None:
    level = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(session_factory=SessionLocal, *, cache: Optional[TemplateCache] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        init_database(session_factory.kw.get("bind"))
        ensure_default_policy(session_factory)
        settings = cache_settings(load_active_policy(session_factory))
        if app.state.cache is None:
            app.state.cache = TemplateCache.from_settings(settings)
        app.state.cache.start_sweeper(settings["sweep_interval_seconds"])
        logger.info("Shift planner API started")
        try:
            yield
        finally:
            app.state.cache.stop_sweeper(timeout=1.0)

    app = FastAPI(title="Shift Planner API", version="0.1", lifespan=lifespan)
    app.state.cache = cache

    def get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def get_cache(request: Request) -> TemplateCache:
        return request.app.state.cache

    def company_id(x_company_id: int = Header(...)) -> int:
        return x_company_id

    def actor(x_actor: Optional[str] = Header(None)) -> str:
        return (x_actor or "api").strip() or "api"

    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(_: Request, exc: SchedulingError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder({"error": exc.to_dict()}))

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/v1/shifts")
    def post_shift(
        payload: Dict[str, Any],
        db=Depends(get_db),
        company: int = Depends(company_id),
        user: str = Depends(actor),
        template_cache: TemplateCache = Depends(get_cache),
    ) -> JSONResponse:
        shift = create_shift(db, payload, company_id=company, actor=user, cache=template_cache)
        return JSONResponse(status_code=201, content=jsonable_encoder(shift))

    @app.put("/api/v1/shifts/{shift_id}")
    def put_shift(
        shift_id: int,
        payload: Dict[str, Any],
        db=Depends(get_db),
        company: int = Depends(company_id),
        user: str = Depends(actor),
        template_cache: TemplateCache = Depends(get_cache),
    ) -> JSONResponse:
        shift = update_shift(db, shift_id, payload, company_id=company, actor=user, cache=template_cache)
        return JSONResponse(content=jsonable_encoder(shift))

    @app.post("/api/v1/shifts/bulk-create")
    def post_bulk_create(
        payload: Dict[str, Any],
        db=Depends(get_db),
        company: int = Depends(company_id),
        user: str = Depends(actor),
        template_cache: TemplateCache = Depends(get_cache),
    ) -> JSONResponse:
        result = bulk_create_shifts(db, payload, company_id=company, actor=user, cache=template_cache)
        return JSONResponse(content=jsonable_encoder(result.to_dict()))

    @app.post("/api/v1/shifts/duplicate")
    def post_duplicate(
        payload: Dict[str, Any],
        db=Depends(get_db),
        company: int = Depends(company_id),
        user: str = Depends(actor),
        template_cache: TemplateCache = Depends(get_cache),
    ) -> JSONResponse:
        result = duplicate_shifts(db, payload, company_id=company, actor=user, cache=template_cache)
        return JSONResponse(content=jsonable_encoder(result.to_dict()))

    @app.post("/api/v1/shifts/validate-conflicts")
    def post_validate_conflicts(
        payload: Dict[str, Any],
        db=Depends(get_db),
        company: int = Depends(company_id),
    ) -> JSONResponse:
        shifts = payload.get("shifts")
        if not isinstance(shifts, list):
            raise InvalidRequestError("shifts must be a list")
        report = validate_conflicts(db, shifts, company_id=company)
        return JSONResponse(content=jsonable_encoder(report))

    @app.get("/api/v1/shifts/patterns/{employee_id}")
    def get_patterns(
        employee_id: int,
        limit: int = Query(10, ge=1, le=100),
        db=Depends(get_db),
        company: int = Depends(company_id),
        template_cache: TemplateCache = Depends(get_cache),
    ) -> JSONResponse:
        patterns = get_employee_patterns(db, company, employee_id, limit=limit, cache=template_cache)
        return JSONResponse(content=jsonable_encoder({"employee_id": employee_id, "patterns": patterns}))

    @app.get("/api/v1/shifts/suggestions")
    def get_suggestions(
        employee_id: int,
        date: Optional[str] = None,
        location_id: Optional[int] = None,
        limit: int = Query(5, ge=1, le=50),
        db=Depends(get_db),
        company: int = Depends(company_id),
        template_cache: TemplateCache = Depends(get_cache),
    ) -> JSONResponse:
        suggestions = suggest_shift_times(
            db,
            company,
            employee_id,
            shift_date=date,
            location_id=location_id,
            limit=limit,
            cache=template_cache,
        )
        return JSONResponse(content=jsonable_encoder({"employee_id": employee_id, "suggestions": suggestions}))

    @app.get("/api/v1/scheduling-templates")
    def get_scheduling_templates(
        location_id: Optional[int] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        db=Depends(get_db),
        company: int = Depends(company_id),
        template_cache: TemplateCache = Depends(get_cache),
    ) -> JSONResponse:
        filters = TemplateFilter(location_id=location_id, is_active=is_active, search=search)
        templates: List[Dict[str, Any]] = list_scheduling_templates(db, company, filters, cache=template_cache)
        return JSONResponse(content=jsonable_encoder({"templates": templates}))

    @app.post("/api/v1/scheduling-templates")
    def post_scheduling_template(
        payload: Dict[str, Any],
        db=Depends(get_db),
        company: int = Depends(company_id),
        user: str = Depends(actor),
        template_cache: TemplateCache = Depends(get_cache),
    ) -> JSONResponse:
        template = create_scheduling_template(db, payload, company_id=company, actor=user, cache=template_cache)
        return JSONResponse(status_code=201, content=jsonable_encoder(template))

    @app.post("/api/v1/scheduling-batches/apply-template")
    def post_apply_template(
        payload: Dict[str, Any],
        db=Depends(get_db),
        company: int = Depends(company_id),
        user: str = Depends(actor),
    ) -> JSONResponse:
        batch_id = payload.get("batch_id")
        template_id = payload.get("template_id")
        if batch_id is None or template_id is None:
            raise InvalidRequestError("batch_id and template_id are required")
        result = apply_template_to_batch(db, batch_id, template_id, company_id=company, actor=user)
        return JSONResponse(status_code=201, content=jsonable_encoder(result))

    @app.get("/api/v1/cache/stats")
    def get_cache_stats(template_cache: TemplateCache = Depends(get_cache)) -> JSONResponse:
        return JSONResponse(content=template_cache.stats())

    return app


app = create_app()
