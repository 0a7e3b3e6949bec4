"""FastAPI application entrypoint for flake-info service mode."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import FlakeInfoConfig
from ..errors import ConfigError, FlakeInfoError
from ..index.publisher import GenerationCounter
from ..models import FlakeReference
from ..orchestrator import Orchestrator, RunReport


class ImportRequest(BaseModel):
    flake: str
    publish: bool = True


class ImportResponse(BaseModel):
    flake: str
    state: str
    succeeded: int
    broken: int
    skipped: int
    publish: str
    generation: Optional[int] = None
    platforms: Dict[str, str] = {}
    warnings: List[str] = []
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str


def _response_from_report(report: RunReport) -> ImportResponse:
    return ImportResponse(
        flake=str(report.reference),
        state=report.state.value,
        succeeded=report.succeeded,
        broken=report.broken,
        skipped=report.skipped,
        publish=report.publish_outcome.value,
        generation=report.generation.number if report.generation else None,
        platforms=dict(report.platforms),
        warnings=list(report.warnings),
        error=report.error,
    )


def create_app(orchestrator_factory: Callable[[bool], Orchestrator]) -> FastAPI:
    """Create the FastAPI application exposing flake imports.

    ``orchestrator_factory`` receives whether the request wants publishing.
    """

    app = FastAPI(title="flake-info", version="1.0.0")

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    def get_factory() -> Callable[[bool], Orchestrator]:
        return orchestrator_factory

    @app.post("/imports", response_model=ImportResponse)
    async def import_flake(
        payload: ImportRequest,
        factory: Callable[[bool], Orchestrator] = Depends(get_factory),
    ) -> ImportResponse:
        reference = FlakeReference.parse(payload.flake)
        orchestrator = factory(payload.publish)

        def _run() -> RunReport:
            return orchestrator.run(reference, publish=payload.publish)

        loop = asyncio.get_running_loop()
        report = await loop.run_in_executor(None, _run)
        return _response_from_report(report)

    @app.exception_handler(ConfigError)
    async def config_error_handler(_: Any, exc: ConfigError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(FlakeInfoError)
    async def flake_info_error_handler(
        _: Any, exc: FlakeInfoError
    ) -> JSONResponse:  # pragma: no cover - simple mapping
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    return app


def build_service_app(config: FlakeInfoConfig, *, publish: bool = True) -> FastAPI:
    """Service application whose requests share one generation counter."""
    from ..cli import build_orchestrator

    if publish:
        # Fail at startup rather than on the first request.
        build_orchestrator(config, publish=True)

    generations = GenerationCounter()

    def factory(wants_publish: bool) -> Orchestrator:
        return build_orchestrator(
            config, publish=wants_publish and publish, generations=generations
        )

    return create_app(factory)


def run_service(
    config: FlakeInfoConfig,
    *,
    host: str = "127.0.0.1",
    port: int = 8000,
    publish: bool = True,
) -> None:  # pragma: no cover - integration path
    uvicorn.run(build_service_app(config, publish=publish), host=host, port=port)
