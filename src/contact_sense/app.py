"""FastAPI application for ContactSense."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contact_sense import __version__
from contact_sense.config import settings
from contact_sense.db import async_session_factory, init_db
from contact_sense.errors import (
    ConcurrencyConflict,
    ContactSenseError,
    InputError,
    StorageUnavailable,
)
from contact_sense.resolution import SqlAlchemyUnitOfWork, TransactionCoordinator
from contact_sense.schemas import IdentifyRequest, IdentifyResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    await init_db()
    yield


app = FastAPI(
    title="ContactSense",
    description="Identity reconciliation across contacts sharing emails and phone numbers",
    version=__version__,
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_coordinator() -> TransactionCoordinator:
    """Dependency for the request-scoped transaction coordinator."""
    return TransactionCoordinator(SqlAlchemyUnitOfWork(async_session_factory))


router = APIRouter(prefix="/api")


@router.post("/identify", response_model=IdentifyResponse)
async def identify(
    body: IdentifyRequest,
    coordinator: Annotated[TransactionCoordinator, Depends(get_coordinator)],
) -> IdentifyResponse:
    """Resolve a contact to its identity cluster."""
    return await coordinator.identify(email=body.email, phone_number=body.phone_number)


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Identity Reconciliation Service is running."}


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    issues = [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": issues})


@app.exception_handler(InputError)
async def input_error_handler(request: Request, exc: InputError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": [{"msg": str(exc)}]})


@app.exception_handler(ConcurrencyConflict)
@app.exception_handler(StorageUnavailable)
async def transient_error_handler(request: Request, exc: ContactSenseError) -> JSONResponse:
    logger.warning("Transient failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "Service Unavailable"})


@app.exception_handler(ContactSenseError)
async def contact_sense_error_handler(request: Request, exc: ContactSenseError) -> JSONResponse:
    logger.error("Resolution failed on %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})
