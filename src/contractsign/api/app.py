from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from contractsign import __version__
from contractsign.api.routers.health import router as health_router
from contractsign.config import get_settings
from contractsign.database import init_db
from contractsign.exceptions import ContractSignError
from contractsign.web.certificate_router import certificate_router
from contractsign.web.esign_router import esign_router

logger = logging.getLogger(__name__)


async def contractsign_error_handler(request: Request, exc: ContractSignError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


def create_app() -> FastAPI:
    app = FastAPI(title="ContractSign", version=__version__)
    app.add_exception_handler(ContractSignError, contractsign_error_handler)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(certificate_router, prefix="/api/v1")
    app.include_router(esign_router, prefix="/api/v1")

    @app.on_event("startup")
    def _startup() -> None:  # pragma: no cover
        # Production environments should use migrations instead.
        settings = get_settings()
        if settings.ENVIRONMENT == "dev":
            init_db(create_tables=True)

    return app


app = create_app()
