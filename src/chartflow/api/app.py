from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chartflow import __version__
from chartflow.api.routers.health import router as health_router
from chartflow.api.routers.queue import router as queue_router
from chartflow.config import get_settings
from chartflow.database import init_db
from chartflow.exceptions import ChartFlowException


def create_app() -> FastAPI:
    app = FastAPI(title="ChartFlow", version=__version__)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(queue_router, prefix="/api/v1")

    @app.exception_handler(ChartFlowException)
    async def _chartflow_exception_handler(
        _request: Request, exc: ChartFlowException
    ) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})

    @app.on_event("startup")
    def _startup() -> None:  # pragma: no cover
        # Dev convenience: auto-create tables. Production uses migrations.
        settings = get_settings()
        if settings.ENVIRONMENT == "dev":
            init_db(create_tables=True)

    return app


app = create_app()
