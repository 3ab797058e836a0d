from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .routes_accounts import router as accounts_router
from .routes_contents import router as contents_router
from .routes_review import router as review_router
from .services.content_lock import ContentLocked
from .services.repository import AccountNotFound, ContentNotFound
from .services.review_gateway import DecisionAlreadyRecorded
from .services.status_machine import InvalidStatusTransition
from .services.token_manager import CredentialRefreshFailed
from .settings import get_settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("reel_factory")

app = FastAPI(title="reel-factory")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ContentNotFound)
@app.exception_handler(AccountNotFound)
async def not_found_handler(request: Request, exc: LookupError):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(ContentLocked)
@app.exception_handler(DecisionAlreadyRecorded)
@app.exception_handler(InvalidStatusTransition)
async def conflict_handler(request: Request, exc: Exception):
    return JSONResponse({"detail": str(exc)}, status_code=409)


@app.exception_handler(CredentialRefreshFailed)
async def credential_handler(request: Request, exc: CredentialRefreshFailed):
    return JSONResponse({"detail": str(exc)}, status_code=502)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(contents_router)
app.include_router(review_router)
app.include_router(accounts_router)


@app.on_event("startup")
async def startup_event():
    """Start scheduler on app startup."""
    from .db import get_session_factory
    from .deps import get_services
    from .services.scheduler import scheduler_service
    scheduler_service.configure(get_session_factory(), get_services())
    scheduler_service.start()


@app.on_event("shutdown")
async def shutdown_event():
    from .services.scheduler import scheduler_service
    scheduler_service.stop()
    logger.info("Scheduler stopped on app shutdown")
