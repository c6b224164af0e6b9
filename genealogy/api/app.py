"""
FastAPI transport for the genealogy service.

Endpoints:
- POST /decide    match an event and record the decision
- POST /feedback  report the outcome of a decision
- POST /evolve    run one evolution pass
- GET  /health    liveness plus evolution metrics
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import hmac
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from genealogy import __version__
from genealogy.decisions.recorder import DecisionConfig
from genealogy.exceptions import (
    ConfigurationError,
    DecisionNotFoundError,
    EvolutionError,
    EvolutionInProgressError,
    GenealogyError,
    RuleNotFoundError,
    StorageError,
    ValidationError,
)
from genealogy.service import DecideResult, GenealogyService


class ApiConfig(BaseModel):
    api_token: Optional[str] = Field(
        default=None, description="Required X-API-Token for decide/feedback (None = open)"
    )
    evolve_secret: Optional[str] = Field(
        default=None, description="Required X-Genealogy-Secret for evolve (None = open)"
    )
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class DecideRequest(BaseModel):
    event_type: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    context: Optional[dict[str, Any]] = None


class FeedbackRequest(BaseModel):
    decision_id: Any = None
    outcome: Any = None
    score: Any = None


_STATUS: list[tuple[type[GenealogyError], int, str]] = [
    (DecisionNotFoundError, 404, "decision_not_found"),
    (RuleNotFoundError, 404, "rule_not_found"),
    (ValidationError, 400, "invalid_request"),
    (EvolutionInProgressError, 409, "evolution_in_progress"),
    (EvolutionError, 500, "evolution_failed"),
    (StorageError, 502, "storage_failed"),
    (ConfigurationError, 503, "not_configured"),
]


def _error_response(exc: GenealogyError) -> JSONResponse:
    for exc_type, status, code in _STATUS:
        if isinstance(exc, exc_type):
            return JSONResponse(
                status_code=status, content={"ok": False, "error": code, "details": str(exc)}
            )
    return JSONResponse(
        status_code=500, content={"ok": False, "error": "internal_error", "details": str(exc)}
    )


def _check_secret(expected: Optional[str], got: Optional[str]) -> None:
    if not expected:
        return
    if not got or not hmac.compare_digest(got.strip(), expected):
        raise HTTPException(status_code=401, detail="unauthorized")


def create_app(
    service: GenealogyService | None,
    api_config: ApiConfig | None = None,
    decision_config: DecisionConfig | None = None,
    close_storage: bool = True,
) -> FastAPI:
    """Build the HTTP app.

    ``service=None`` means storage is not configured: ``/decide`` answers with
    the unrecorded default decision, the other write endpoints answer 503.
    """
    api_config = api_config or ApiConfig()
    fallback = decision_config or DecisionConfig()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if service is not None and service.engine.config.interval is not None:
            service.engine.start()
        try:
            yield
        finally:
            if service is not None:
                await service.engine.stop()
                if close_storage:
                    await service.storage.close()

    app = FastAPI(title="Genealogy Decision API", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_config.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Token", "X-Genealogy-Secret"],
    )

    @app.exception_handler(GenealogyError)
    async def _genealogy_error(_: Request, exc: GenealogyError) -> JSONResponse:
        logger.warning("[API] {}: {}", type(exc).__name__, exc)
        return _error_response(exc)

    def require_token(x_api_token: Optional[str] = Header(default=None)) -> None:
        _check_secret(api_config.api_token, x_api_token)

    def require_evolve_secret(
        x_genealogy_secret: Optional[str] = Header(default=None),
    ) -> None:
        _check_secret(api_config.evolve_secret, x_genealogy_secret)

    def require_service() -> GenealogyService:
        if service is None:
            raise ConfigurationError("Storage is not configured")
        return service

    @app.get("/health")
    async def health() -> dict[str, Any]:
        if service is None:
            return {"ok": True, "storage": False}
        return {"ok": True, "storage": True, "evolution": await service.engine.get_status()}

    @app.post("/decide", dependencies=[Depends(require_token)])
    async def decide(body: DecideRequest) -> dict[str, Any]:
        if service is None:
            result = DecideResult(
                event_id=None,
                decision_id=None,
                rule=None,
                response=fallback.default_response,
                confidence=fallback.default_confidence,
                recorded=False,
                note="Storage not configured; default decision was not recorded.",
            )
            return result.to_dict()
        result = await service.decide(body.event_type, body.metadata, body.context)
        return result.to_dict()

    @app.post("/feedback", dependencies=[Depends(require_token)])
    async def feedback(body: FeedbackRequest) -> dict[str, Any]:
        svc = require_service()
        result = await svc.apply_feedback(body.decision_id, body.outcome, body.score)
        return result.model_dump(mode="json")

    @app.post("/evolve", dependencies=[Depends(require_evolve_secret)])
    async def evolve() -> dict[str, Any]:
        svc = require_service()
        result = await svc.evolve()
        return {"ok": True, **result.to_dict()}

    return app
