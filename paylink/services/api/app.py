"""HTTP surface for checkout, provider callbacks and operator reconciliation.

Identity arrives from the upstream auth layer as `x-merchant-id` and `x-roles`
headers; this service only checks the shared API key and ownership.
"""

from time import perf_counter, time
from typing import Any
from uuid import uuid4

from fastapi import Body, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from paylink.common.config import settings
from paylink.common.errors import MalformedPayload, PaymentError
from paylink.common.logging import logger, trace_id_ctx
from paylink.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paylink.services.gateways.credentials import connect_gateway, disconnect_gateway
from paylink.services.ledger.schemas import CheckoutResult, OpenTransactionRequest, TransactionView

ERROR_STATUS = {
    "not_found": 404,
    "conflicting_outcome": 409,
    "link_unavailable": 409,
    "invalid_request": 400,
    "malformed_payload": 400,
    "not_supported": 400,
    "not_configured": 422,
    "unknown": 422,
    "provider_rejected": 502,
    "provider_unavailable": 503,
}


class TokenBucket:
    """Redis token bucket (capacity = refill rate = limit per minute)."""

    def __init__(self, rdb, limit_per_minute: int | None = None, prefix: str = "tokenbucket") -> None:
        self.rdb = rdb
        self.capacity = float(limit_per_minute or settings.rate_limit_per_minute)
        self.prefix = prefix

    def allow(self, subject: str) -> bool:
        key = f"{self.prefix}:{subject}"
        now = time()
        refill_per_sec = self.capacity / 60.0

        values = self.rdb.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else self.capacity
        updated_at = float(values[1]) if values[1] is not None else now
        tokens = min(self.capacity, tokens + max(0.0, now - updated_at) * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.rdb.expire(key, 120)
        return allowed


class GatewaySecretRequest(BaseModel):
    secret: str = Field(min_length=1)


class BatchReconcileRequest(BaseModel):
    references: list[str]


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _roles(x_roles: str | None) -> set[str]:
    return {role.strip() for role in (x_roles or "").split(",") if role.strip()}


def enforce_merchant(merchant_id: str, x_merchant_id: str | None, x_roles: str | None) -> None:
    if "admin" in _roles(x_roles):
        return
    if not x_merchant_id or x_merchant_id != merchant_id:
        raise HTTPException(status_code=403, detail="merchant mismatch")


def enforce_admin(x_roles: str | None) -> None:
    if "admin" not in _roles(x_roles):
        raise HTTPException(status_code=403, detail="admin role required")


def _checkout_response(result: CheckoutResult) -> JSONResponse:
    status_code = 502 if result.error else 200
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


def create_app(
    session_factory,
    ledger,
    webhooks,
    reconciliation,
    rate_limiter: TokenBucket | None = None,
    lifespan=None,
) -> FastAPI:
    app = FastAPI(title="PayLink", lifespan=lifespan)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
                elapsed
            )
            http_requests_total.labels(
                service=settings.service_name, route=route, method=method, status_code=str(status_code)
            ).inc()

    @app.exception_handler(PaymentError)
    async def payment_error_handler(_: Request, exc: PaymentError):
        """Map domain errors to HTTP status codes in one place."""

        status_code = ERROR_STATUS.get(exc.code, 400)
        if status_code >= 500:
            logger.warning("request failed code=%s error=%s", exc.code, exc.message)
        return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": exc.message})

    # ---------------------------------------------------------------- checkout

    @app.post("/merchants/{merchant_id}/links/{link_id}/checkout", response_model=CheckoutResult)
    def merchant_checkout(
        merchant_id: str,
        link_id: str,
        req: OpenTransactionRequest | None = Body(default=None),
        x_api_key: str | None = Header(default=None),
        x_merchant_id: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        """Open a checkout on behalf of the owning merchant."""

        enforce_api_key(x_api_key)
        enforce_merchant(merchant_id, x_merchant_id, x_roles)
        return _checkout_response(ledger.open_transaction(merchant_id, link_id, req))

    @app.post("/public/links/{link_id}/checkout", response_model=CheckoutResult)
    def public_checkout(link_id: str, req: OpenTransactionRequest | None = Body(default=None)):
        """Anonymous customer checkout, rate limited per link."""

        if rate_limiter is not None and not rate_limiter.allow(f"link:{link_id}"):
            raise HTTPException(status_code=429, detail="rate limit exceeded")
        return _checkout_response(ledger.open_transaction(None, link_id, req))

    # ---------------------------------------------------------------- webhooks

    @app.post("/webhooks/{provider}")
    async def provider_webhook(provider: str, request: Request):
        """Acknowledge every callback that can be recorded; 400 only when it cannot."""

        try:
            payload = await request.json()
        except ValueError as exc:
            raise MalformedPayload("callback body is not valid JSON") from exc
        ack = await run_in_threadpool(webhooks.receive, provider, payload)
        return ack.model_dump()

    @app.get("/webhooks/{provider}")
    async def provider_redirect_callback(provider: str, request: Request):
        """Redirect-style callbacks carry the payload in the query string."""

        ack = await run_in_threadpool(webhooks.receive, provider, dict(request.query_params))
        return ack.model_dump()

    @app.post("/webhooks/{provider}/{correlation_id}/replay")
    def replay_webhook(
        provider: str,
        correlation_id: str,
        x_api_key: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        enforce_api_key(x_api_key)
        enforce_admin(x_roles)
        return webhooks.replay(provider, correlation_id).model_dump()

    # ---------------------------------------------------------- reconciliation

    @app.get("/reconciliation/stuck")
    def stuck_transactions(
        hours: float = Query(default=1, gt=0),
        provider: str | None = None,
        merchant_id: str | None = None,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        x_api_key: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        enforce_api_key(x_api_key)
        enforce_admin(x_roles)
        return reconciliation.find_stuck(
            hours=hours, provider=provider, merchant_id=merchant_id, limit=limit, offset=offset
        ).model_dump(mode="json")

    @app.post("/reconciliation/run")
    def run_reconciliation(x_api_key: str | None = Header(default=None), x_roles: str | None = Header(default=None)):
        """Trigger one sweep immediately."""

        enforce_api_key(x_api_key)
        enforce_admin(x_roles)
        summary = reconciliation.run_sweep()
        return summary.model_dump()

    @app.post("/reconciliation/batch")
    def batch_reconciliation(
        req: BatchReconcileRequest,
        x_api_key: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        enforce_api_key(x_api_key)
        enforce_admin(x_roles)
        return reconciliation.reconcile_batch(req.references).model_dump(mode="json")

    @app.get("/reconciliation/{reference}")
    def reconcile_transaction(
        reference: str,
        x_api_key: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        """Read-only comparison of ledger state and provider state."""

        enforce_api_key(x_api_key)
        enforce_admin(x_roles)
        return reconciliation.reconcile_one(reference).model_dump(mode="json")

    @app.post("/reconciliation/{reference}/sync", response_model=TransactionView)
    def sync_transaction(
        reference: str,
        x_api_key: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        enforce_api_key(x_api_key)
        enforce_admin(x_roles)
        return TransactionView.model_validate(reconciliation.force_sync(reference))

    # ------------------------------------------------------------ merchant ops

    @app.put("/merchants/{merchant_id}/gateways/{provider}")
    def connect_merchant_gateway(
        merchant_id: str,
        provider: str,
        req: GatewaySecretRequest,
        x_api_key: str | None = Header(default=None),
        x_merchant_id: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        """Store (or rotate) the merchant's own secret for a provider."""

        enforce_api_key(x_api_key)
        enforce_merchant(merchant_id, x_merchant_id, x_roles)
        if provider not in ledger.registry.providers():
            raise HTTPException(status_code=404, detail=f"unsupported gateway: {provider}")
        with session_factory() as db:
            credential = connect_gateway(db, merchant_id, provider, req.secret)
            db.commit()
            return {"merchant_id": merchant_id, "provider": provider, "connected_at": credential.connected_at}

    @app.delete("/merchants/{merchant_id}/gateways/{provider}")
    def disconnect_merchant_gateway(
        merchant_id: str,
        provider: str,
        x_api_key: str | None = Header(default=None),
        x_merchant_id: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        enforce_api_key(x_api_key)
        enforce_merchant(merchant_id, x_merchant_id, x_roles)
        with session_factory() as db:
            removed = disconnect_gateway(db, merchant_id, provider)
            db.commit()
        if not removed:
            raise HTTPException(status_code=404, detail="gateway not connected")
        return {"merchant_id": merchant_id, "provider": provider, "disconnected": True}

    @app.get("/transactions/{reference}", response_model=TransactionView)
    def get_transaction(
        reference: str,
        x_api_key: str | None = Header(default=None),
        x_merchant_id: str | None = Header(default=None),
        x_roles: str | None = Header(default=None),
    ):
        """Fetch current status for one transaction."""

        enforce_api_key(x_api_key)
        tx = ledger.get_transaction(reference)
        enforce_merchant(tx.merchant_id, x_merchant_id, x_roles)
        return TransactionView.model_validate(tx)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health() -> dict[str, Any]:
        """Container health probe endpoint."""

        return {"ok": True}

    return app
