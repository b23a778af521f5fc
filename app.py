# app.py - Exam Results Integrity Service v1.0.0
# - Divergence detection, correction and audit history
# - Grade configuration inspection and ad-hoc composite scoring

import csv
import io
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response

import db
from engines import divergence_catalog as catalog
from engines.caching import ResponseCache
from engines.correction import Actor, CorrectionEngine
from engines.detection import DivergenceDetector
from engines.history import HistoryStore
from engines.scoring import compute_composite, round_score
from engines.validation import InvalidFixRequest, UnauthorizedFix
from env_validation import get_env_float
from grade_config import GradeConfigResolver
from learning_levels import LearningLevelClassifier
from schemas import (
    CompositeRequest,
    CompositeResponse,
    CriticalCountResponse,
    DetectionResponse,
    DivergenceModel,
    FixRequest,
    FixResponse,
    GradeConfigurationModel,
    HistoryPageResponse,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Integrity service ready (db=%s)", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Exam Results Integrity Service", version="1.0.0", lifespan=_lifespan)

resolver = GradeConfigResolver()
classifier = LearningLevelClassifier(resolver.bands)
detector = DivergenceDetector(resolver, classifier)
history = HistoryStore()
response_cache = ResponseCache(ttl_seconds=get_env_float("RESPONSE_CACHE_TTL", 60.0))
corrector = CorrectionEngine(
    detector,
    resolver,
    classifier,
    history,
    on_batch_complete=response_cache.invalidate,
)

_AUDIT_LOGGER = logging.getLogger("integrity.audit")
if not _AUDIT_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s AUDIT %(message)s"))
    _AUDIT_LOGGER.addHandler(_handler)
_AUDIT_LOGGER.setLevel(logging.INFO)
_AUDIT_LOGGER.propagate = False

_CRITICAL_COUNT_KEY = "divergences:critical-count"


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc.args[0] if exc.args else exc))


def _check_filters(severity: Optional[str], type: Optional[str]) -> None:
    try:
        if severity:
            catalog.parse_severity(severity)
        if type:
            catalog.parse_type(type)
    except KeyError as exc:
        raise _bad_request(exc)


# ---------- Divergences ----------
@app.get("/divergences", response_model=DetectionResponse)
async def list_divergences(severity: Optional[str] = None, type: Optional[str] = None):
    _check_filters(severity, type)
    report = await detector.run_all()
    return report.to_dict(severity=severity or None, type_=type or None)


@app.post("/divergences/run", response_model=DetectionResponse)
async def run_divergences():
    report = await detector.run_all()
    payload = report.to_dict()
    summary = report.summary
    payload["message"] = (
        f"Detection finished: {summary['total']} divergences, "
        f"{summary['failed_checks']} checks failed"
    )
    response_cache.set(_CRITICAL_COUNT_KEY, summary["critical"])
    return payload


@app.get("/divergences/critical-count", response_model=CriticalCountResponse)
async def critical_count():
    cached = response_cache.get(_CRITICAL_COUNT_KEY)
    if cached is not None:
        return {"critical": cached, "cached": True}
    count = await detector.count_critical()
    response_cache.set(_CRITICAL_COUNT_KEY, count)
    return {"critical": count, "cached": False}


@app.get("/divergences/export")
async def export_divergences(format: str = "json", severity: Optional[str] = None):
    if format not in ("json", "csv"):
        raise HTTPException(status_code=400, detail="format must be json or csv")
    _check_filters(severity, None)
    report = await detector.run_all()
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")

    if format == "json":
        payload = report.to_dict(severity=severity or None)
        return Response(
            content=DetectionResponse.model_validate(payload).model_dump_json(),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="divergences_{stamp}.json"'},
        )

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["severity", "type", "title", "count", "entity", "name", "code", "school", "grade", "problem", "suggested_fix"]
    )
    for divergence in report.filtered(severity=severity or None):
        for detail in divergence.details:
            writer.writerow(
                [
                    divergence.severity.label,
                    divergence.type.value,
                    divergence.entry.title,
                    divergence.count,
                    detail.entity,
                    detail.name or "",
                    detail.code or "",
                    detail.school or "",
                    detail.grade or "",
                    detail.problem,
                    detail.suggested_fix or "",
                ]
            )
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="divergences_{stamp}.csv"'},
    )


@app.post("/divergences/fix", response_model=FixResponse)
def fix_divergences(body: FixRequest, request: Request):
    actor = Actor(
        user_id=request.headers.get("x-user-id"),
        user_name=request.headers.get("x-user-name"),
    )
    try:
        result = corrector.apply(
            body.type,
            ids=body.ids,
            fix_all=body.fix_all,
            params=body.params,
            actor=actor,
            confirmation_token=body.confirmation_token,
        )
    except UnauthorizedFix as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except InvalidFixRequest as exc:
        raise _bad_request(exc)
    return result.to_dict()


@app.get("/divergences/history", response_model=HistoryPageResponse)
def divergence_history(
    type: Optional[str] = None,
    severity: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
):
    filters = {
        "type": type,
        "severity": severity,
        "entity": entity,
        "entity_id": entity_id,
        "date_from": date_from,
        "date_to": date_to,
        "page": page,
        "limit": limit,
    }
    try:
        return history.query(filters).to_dict()
    except InvalidFixRequest as exc:
        raise _bad_request(exc)


@app.get("/divergences/{divergence_type}", response_model=DivergenceModel)
def get_divergence(divergence_type: str, offset: int = 0, limit: Optional[int] = None):
    try:
        catalog.parse_type(divergence_type)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0]))
    if offset < 0 or (limit is not None and limit < 1):
        raise HTTPException(status_code=400, detail="offset must be >= 0 and limit >= 1")
    return detector.run_check(divergence_type, offset=offset, limit=limit).to_dict()


# ---------- Grade configuration ----------
@app.get("/grade-configs")
def list_grade_configs():
    return {
        "configurations": [config.to_dict() for config in resolver.configurations()],
        "degraded": resolver.degraded,
    }


@app.get("/grade-configs/{grade}", response_model=GradeConfigurationModel)
def get_grade_config(grade: str):
    config = resolver.resolve(grade)
    if config is None:
        raise HTTPException(status_code=404, detail=f"no configuration for grade {grade}")
    return config.to_dict()


@app.post("/grade-configs/invalidate")
def invalidate_grade_configs():
    resolver.invalidate()
    response_cache.invalidate()
    return {"ok": True}


# ---------- Scoring ----------
@app.post("/scores/composite", response_model=CompositeResponse)
def composite_score(body: CompositeRequest):
    config = resolver.resolve(body.grade)
    if config is None:
        raise HTTPException(status_code=404, detail=f"no configuration for grade {body.grade}")
    composite = round_score(compute_composite(body.scores, config, body.essay_score))
    level = classifier.classify(composite, body.grade) if config.uses_learning_level else None
    return {
        "grade": config.grade,
        "composite": composite,
        "level": level.to_dict() if level else None,
        "configuration": config.to_dict(),
    }
