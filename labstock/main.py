"""Application factory: wires settings, logging, database and routers."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .core.errors import (
    LabStockError,
    http_exception_handler,
    labstock_error_handler,
    validation_exception_handler,
)
from .core.logging import configure_logging
from .db.session import init_db
from .middlewares import RequestIdMiddleware
from .routers import api_auth, api_chemicals, api_equipment, api_glassware, api_requests
from .services.lab_directory import LabDirectory
from .settings import settings


def create_app(*, lab_directory: LabDirectory | None = None, create_tables: bool = True) -> FastAPI:
    configure_logging(settings.LOG_LEVEL)
    if create_tables:
        init_db()

    app = FastAPI(title=settings.APP_NAME, version=__version__)
    app.state.lab_directory = lab_directory or LabDirectory()

    app.add_middleware(RequestIdMiddleware)
    if settings.ALLOWED_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.ALLOWED_ORIGINS,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(LabStockError, labstock_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    for module in (api_auth, api_chemicals, api_glassware, api_equipment, api_requests):
        app.include_router(module.router)

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    Instrumentator().instrument(app).expose(app)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("labstock.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
