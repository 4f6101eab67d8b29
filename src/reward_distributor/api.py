"""FastAPI application exposing the distributor's public surface."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from reward_distributor import __version__
from reward_distributor.errors import (
    ClaimInProgressError,
    ClaimValidationError,
    DistributorError,
    InsufficientLiquidityError,
    InternalError,
    RaceLostError,
    RateLimitedError,
    TransientUpstreamError,
    new_correlation_id,
)
from reward_distributor.service import Application, DistributorService

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Internal error"

# ============================================================================
# Request Models
# ============================================================================


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PrepareRequest(_Request):
    """Request model for an on-demand prepare."""

    cycle_id: int | None = Field(None, alias="cycleId", description="Window boundary; current cycle if omitted")


class PreviewRequest(_Request):
    """Request model for a claim preview."""

    wallet: str = Field(..., min_length=1, description="Claiming wallet (base58)")


class SubmitRequest(_Request):
    """Request model for a signed claim."""

    wallet: str = Field(..., min_length=1)
    signed_transaction: str = Field(..., alias="signedTransaction", min_length=1, description="Base64 transaction")
    snapshot_ids: list[int | str] = Field(..., alias="snapshotIds")
    amount_hint: str | None = Field(None, alias="amountHint", description="Display amount the client expects")
    preview_id: str | None = Field(None, alias="previewId")


class ReportRequest(_Request):
    """Request model for a claim the client broadcast itself."""

    wallet: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    snapshot_ids: list[int | str] = Field(..., alias="snapshotIds")


# ============================================================================
# Error mapping
# ============================================================================


def status_for(error: DistributorError) -> int:
    """HTTP status of a taxonomy error."""
    if isinstance(error, ClaimValidationError):
        return 400
    if isinstance(error, (ClaimInProgressError, RaceLostError)):
        return 409
    if isinstance(error, RateLimitedError):
        return 429
    if isinstance(error, (TransientUpstreamError, InsufficientLiquidityError)):
        return 503
    return 500


def _error_body(message: str, code: str, cid: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"ok": False, "error": message, "code": code}
    if cid:
        body["correlationId"] = cid
    return body


async def _distributor_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, DistributorError)
    status = status_for(exc)
    if status >= 500 and not isinstance(exc, (TransientUpstreamError, InsufficientLiquidityError, InternalError)):
        return await _unexpected_error_handler(request, exc)
    logger.info("%s %s -> %d %s: %s", request.method, request.url.path, status, exc.code, exc.message)
    body = _error_body(exc.message, exc.code)
    if exc.retryable:
        body["retryable"] = True
    return JSONResponse(status_code=status, content=body)


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    cid = new_correlation_id()
    logger.error("cid=%s Unhandled error on %s %s", cid, request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=_error_body(GENERIC_ERROR_MESSAGE, InternalError.code, cid))


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


# ============================================================================
# Application factory
# ============================================================================


def create_app(
    service: DistributorService | None = None,
    *,
    application: Application | None = None,
) -> FastAPI:
    """Build the HTTP app.

    Args:
        service: Service to serve directly (tests, embedding).
        application: Application whose lifecycle the app owns; its service
            is used once started.

    Raises:
        ValueError: If neither ``service`` nor ``application`` is given.
    """
    if service is None and application is None:
        raise ValueError("create_app needs a service or an application")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if application is not None:
            await application.start()
        try:
            yield
        finally:
            if application is not None:
                await application.stop()

    def current() -> DistributorService:
        if service is not None:
            return service
        assert application is not None
        return application.service

    app = FastAPI(
        title="Reward Distributor",
        description="Holder reward cycles, snapshots and co-signed claims",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_exception_handler(DistributorError, _distributor_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    _register_routes(app, current)
    return app


def _register_routes(app: FastAPI, current: Callable[[], DistributorService]) -> None:
    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "healthy", "version": __version__}

    @app.get("/window")
    async def window_status(cycle_id: int | None = Query(None, alias="cycleId")) -> dict[str, Any]:
        outcome = await current().window_status(cycle_id)
        return outcome.to_dict()

    @app.post("/prepare")
    async def prepare(body: PrepareRequest | None = None) -> dict[str, Any]:
        outcome = await current().prepare(body.cycle_id if body else None)
        return outcome.to_dict()

    @app.post("/claims/preview")
    async def preview(body: PreviewRequest, request: Request) -> dict[str, Any]:
        outcome = await current().preview(body.wallet, ip=_client_ip(request))
        return outcome.to_dict()

    @app.post("/claims/submit")
    async def submit(body: SubmitRequest, request: Request) -> dict[str, Any]:
        outcome = await current().submit(
            body.wallet,
            body.signed_transaction,
            body.snapshot_ids,
            amount_hint=body.amount_hint,
            preview_id=body.preview_id,
            ip=_client_ip(request),
        )
        return outcome.to_dict()

    @app.post("/claims/report")
    async def report(body: ReportRequest, request: Request) -> dict[str, Any]:
        outcome = await current().report_claim(
            body.wallet,
            body.signature,
            body.snapshot_ids,
            ip=_client_ip(request),
        )
        return outcome.to_dict()

    @app.get("/claims/recent")
    async def recent_claims(
        limit: int = Query(50),
        wallet: str | None = Query(None),
    ) -> dict[str, Any]:
        return {"claims": await current().recent_claims(limit, wallet=wallet)}

    @app.get("/entitlements/{wallet}")
    async def entitlement(wallet: str) -> dict[str, Any]:
        return await current().entitlement(wallet)

    @app.get("/entitlements/{wallet}/breakdown")
    async def breakdown(wallet: str) -> dict[str, Any]:
        return await current().breakdown(wallet)

    @app.get("/claimable/{wallet}")
    async def claimable(wallet: str) -> dict[str, Any]:
        return await current().claimable(wallet)

    @app.get("/proofs")
    async def proofs() -> dict[str, Any]:
        return {"snapshots": await current().proofs()}

    @app.get("/metrics")
    async def metrics() -> dict[str, Any]:
        return await current().metrics()
