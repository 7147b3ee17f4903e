import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.api import router as ledger_router
from ledger.config import settings
from ledger.errors import (
    ConflictError, DuplicateEntryError, LedgerServiceError, NotFoundError,
    StorageError, ValidationError,
)
from ledger.log import configure_logging
from payouts.api import router as payouts_router
from payouts.container import Services, build_services

# First match wins
ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (DuplicateEntryError, 409),
    (StorageError, 503),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is None:
        configure_logging(settings.LOG_LEVEL)
        app.state.services = build_services(settings)
    yield


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Gift Registry Ledger API",
        description="Contribution ledger and payout settlement for gift registries",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError):
        status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})

    app.include_router(ledger_router)
    app.include_router(payouts_router)
    return app


app = create_app()
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
