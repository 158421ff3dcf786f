import logging
from contextlib import asynccontextmanager
from datetime import datetime
from time import perf_counter
from typing import Annotated, Any, AsyncGenerator, Awaitable, Callable

from fastapi import Body, Depends, FastAPI, Query, Request, Response
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.dependencies import get_ledger
from config import config
from db.db import Database
from domain.custody import Asset, Holder, TransitionRecord
from domain.errors import CustodyError, ErrorCategory
from services.asset_locks import AssetLockRegistry
from services.custody_ledger import DEFAULT_HISTORY_LIMIT, CustodyLedger
from services.notifications import build_notifier
from services.tap_boundary import TapFailure, handle_tap

logger = logging.getLogger(__name__)

HTTP_STATUS_BY_CATEGORY = {
    ErrorCategory.INVALID_INPUT: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.CONTENTION: 503,
    ErrorCategory.UNAVAILABLE: 503,
}


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
    settings = config()
    database = Database.open(settings.database_url, timeout_seconds=settings.storage_timeout_seconds)
    fastapi_app.state.ledger = CustodyLedger(
        database.session_factory,
        notifier=build_notifier(settings.notify_webhook_url, timeout=settings.notify_timeout_seconds),
        locks=AssetLockRegistry(timeout_seconds=settings.lock_timeout_seconds),
        max_attempts=settings.max_conflict_retries,
    )
    yield
    database.close()


app = FastAPI(lifespan=lifespan)


@app.middleware("http")
async def log_process_time(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    start_time = perf_counter()
    response = await call_next(request)
    process_time = perf_counter() - start_time
    logger.debug("Request time: %s %s: %.4fs", request.method, request.url, process_time)
    return response


@app.exception_handler(CustodyError)
async def custody_error_handler(request: Request, exc: CustodyError) -> JSONResponse:
    failure = TapFailure(category=exc.category, message=str(exc), retryable=exc.retryable)
    return JSONResponse(failure.to_payload(), status_code=HTTP_STATUS_BY_CATEGORY[exc.category])


@app.exception_handler(RequestValidationError)
async def tap_payload_error_handler(request: Request, exc: RequestValidationError) -> Response:
    if request.url.path != "/taps":
        return await request_validation_exception_handler(request, exc)
    logger.info("Rejected unparseable tap payload: %s", exc.errors())
    failure = TapFailure(category=ErrorCategory.INVALID_INPUT, message="Tap payload is not valid JSON")
    return JSONResponse(failure.to_payload(), status_code=HTTP_STATUS_BY_CATEGORY[failure.category])


@app.post("/taps")
def post_tap(
    ledger: Annotated[CustodyLedger, Depends(get_ledger)],
    payload: Annotated[Any, Body()] = None,
) -> JSONResponse:
    result = handle_tap(payload, ledger)
    if isinstance(result, TapFailure):
        return JSONResponse(result.to_payload(), status_code=HTTP_STATUS_BY_CATEGORY[result.category])
    return JSONResponse(result.to_payload(), status_code=200)


@app.get("/assets")
def get_assets(ledger: Annotated[CustodyLedger, Depends(get_ledger)]) -> list[Asset]:
    return ledger.list_assets()


@app.get("/assets/overdue")
def get_overdue_assets(
    ledger: Annotated[CustodyLedger, Depends(get_ledger)],
    as_of: datetime | None = None,
) -> list[Asset]:
    return ledger.overdue(as_of)


@app.get("/assets/{asset_id}")
def get_asset(asset_id: str, ledger: Annotated[CustodyLedger, Depends(get_ledger)]) -> Asset:
    return ledger.get_asset(asset_id)


@app.get("/transitions")
def get_transitions(
    ledger: Annotated[CustodyLedger, Depends(get_ledger)],
    asset_id: str | None = None,
    limit: Annotated[int, Query(gt=0, le=500)] = DEFAULT_HISTORY_LIMIT,
) -> list[TransitionRecord]:
    return ledger.history(asset_id, limit=limit)


@app.get("/holders")
def get_holders(ledger: Annotated[CustodyLedger, Depends(get_ledger)]) -> list[Holder]:
    return ledger.list_holders()
