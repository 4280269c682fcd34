"""HTTP surface for the Fleeca payment callback, checkout redirect and admin tools."""

from time import perf_counter
from uuid import uuid4

import redis
from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.datastructures import URL

from fleecapay.common.config import GatewayConfig, SettingsStore, settings
from fleecapay.common.db import SessionLocal
from fleecapay.common.errors import PaymentError
from fleecapay.common.logging import configure_logging, mask_token, trace_id_ctx
from fleecapay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from fleecapay.common.startup import log_startup_config
from fleecapay.common.tracing import instrument_app, setup_tracing
from fleecapay.services.callback.endpoint import CallbackEndpoint
from fleecapay.services.callback.gateway import FleecaGateway
from fleecapay.services.reconciler.schemas import CallbackSession
from fleecapay.services.reconciler.service import PaymentReconciler
from fleecapay.services.reconciler.stores import LogSink, OrderStore, SessionBindingStore
from fleecapay.services.validation.cache import TokenCache
from fleecapay.services.validation.provider import ProviderClient
from fleecapay.services.validation.rate_limit import RateLimiter
from fleecapay.services.validation.service import TokenValidator


SESSION_COOKIE = "fleeca_session"


def build_gateway(session_factory=SessionLocal, redis_client=None, http_client=None, settings_store=None) -> FleecaGateway:
    """Wire every collaborator of the gateway once, at startup."""

    config = GatewayConfig.load(settings_store or SettingsStore(settings))
    rdb = redis_client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
    provider = ProviderClient(config.api_key, http_client=http_client)
    validator = TokenValidator(provider, TokenCache(rdb))
    orders = OrderStore(session_factory)
    bindings = SessionBindingStore(session_factory)
    log_sink = LogSink(session_factory)
    reconciler = PaymentReconciler(
        validator,
        orders,
        bindings,
        log_sink,
        config,
        deadline_seconds=settings.reconcile_deadline_seconds,
    )
    endpoint = CallbackEndpoint(reconciler, RateLimiter(rdb), log_sink)
    return FleecaGateway(
        config,
        provider,
        orders,
        bindings,
        log_sink,
        endpoint,
        store_currency=settings.store_currency,
        supported_currency=settings.supported_currency,
    )


def get_client_ip(request: Request) -> str:
    """Client IP (supports X-Forwarded-For from a trusted proxy)."""

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and request.client and request.client.host in settings.trusted_proxy_ips_set:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


def callback_session(
    request: Request,
    fleeca_session: str | None = Cookie(default=None),
    x_authenticated_user: str | None = Header(default=None),
) -> CallbackSession:
    return CallbackSession(
        session_id=fleeca_session or "",
        user_id=x_authenticated_user or None,
        remote_addr=get_client_ip(request),
    )


def enforce_admin_key(x_admin_key: str | None = Header(default=None)) -> None:
    """Reject admin requests that do not carry the configured admin key."""

    if not settings.admin_api_key or x_admin_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="invalid admin key")


def envelope(success: bool, payload) -> dict:
    return {"success": True, "data": payload} if success else {"success": False, "error": payload}


def create_app(gateway: FleecaGateway) -> FastAPI:
    app = FastAPI(title="Fleeca Payment Callback")
    app.state.gateway = gateway

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Bind a trace id and record request count and latency for every HTTP call."""

        token = trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            trace_id_ctx.reset(token)
            http_request_duration_seconds.labels(
                service=settings.service_name, route=route, method=request.method
            ).observe(max(0.0, perf_counter() - start))
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=request.method,
                status_code=str(status_code),
            ).inc()

    @app.get("/gateway")
    def payment_callback(token: str = "", session: CallbackSession = Depends(callback_session)):
        """Inbound provider callback: reconcile and redirect the customer."""

        response = gateway.handle_callback(token, session)
        target = URL(response.redirect_url).include_query_params(
            notice=response.notice, notice_level=response.notice_level
        )
        return RedirectResponse(str(target), status_code=303)

    @app.post("/checkout/{order_id}")
    def start_checkout(order_id: int, session: CallbackSession = Depends(callback_session)):
        """Send the customer to Fleeca Bank for one order."""

        if not gateway.is_available():
            raise HTTPException(status_code=503, detail="Fleeca Bank is not available")
        order = gateway.orders.get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="order not found")
        if session.user_id and order.owner_user_id and session.user_id != order.owner_user_id:
            raise HTTPException(status_code=404, detail="order not found")

        session_id = session.session_id or uuid4().hex
        try:
            url = gateway.create_payment_redirect(order, session.model_copy(update={"session_id": session_id}))
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not url:
            raise HTTPException(status_code=502, detail="Failed to create payment URL")

        response = JSONResponse({"redirect": url})
        response.set_cookie(SESSION_COOKIE, session_id, httponly=True, samesite="lax")
        return response

    @app.post("/admin/orders/{order_id}/reprocess", dependencies=[Depends(enforce_admin_key)])
    def reprocess_payment(order_id: int, token: str):
        """Re-run reconciliation for an order with a known token."""

        if gateway.orders.get(order_id) is None:
            raise HTTPException(status_code=404, detail="order not found")
        session = CallbackSession(session_id=f"admin-reprocess-{uuid4().hex}")
        gateway.bindings.bind(session.session_id, order_id)
        try:
            response = gateway.endpoint.reprocess(token, session)
        finally:
            gateway.bindings.clear(session.session_id)
        outcome = response.outcome
        payload = {
            "order_id": order_id,
            "result": outcome.result,
            "reason": outcome.reason.value if outcome.reason else None,
            "message": outcome.user_message,
            "order": outcome.order.model_dump() if outcome.order else None,
        }
        return envelope(outcome.is_paid, payload)

    @app.get("/admin/orders/{order_id}/debug", dependencies=[Depends(enforce_admin_key)])
    def debug_payment(order_id: int, token: str):
        """Validate a token in both modes (uncached) next to the order's state."""

        order = gateway.orders.get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="order not found")
        validator = gateway.endpoint.reconciler.validator
        checks = {}
        for mode, strict in (("standard", False), ("strict", True)):
            try:
                result = validator.validate(token, strict=strict, bypass_cache=True)
                checks[mode] = envelope(True, result.summary())
            except PaymentError as exc:
                checks[mode] = envelope(False, {"kind": exc.kind.value, "message": exc.message})
        return envelope(
            True,
            {
                "token": mask_token(token),
                "order": {"id": order.id, "status": order.status, "total_amount": order.total_amount},
                "validation": checks,
            },
        )

    @app.delete("/admin/tokens/{token}/cache", dependencies=[Depends(enforce_admin_key)])
    def clear_token_cache(token: str):
        gateway.endpoint.reconciler.validator.invalidate(token)
        return envelope(True, "Token cache cleared successfully")

    @app.get("/admin/gateway", dependencies=[Depends(enforce_admin_key)])
    def gateway_info():
        """Configuration summary shown on the gateway settings screen."""

        config = gateway.config
        return envelope(
            True,
            {
                "id": gateway.id,
                "title": gateway.title,
                "available": gateway.is_available(),
                "enabled": config.enabled,
                "api_key": config.api_key[:5] + "..." if config.api_key else "Not set",
                "sandbox_mode": config.sandbox_mode,
                "debug_mode": config.debug_mode,
                "callback_url": config.callback_base_url,
            },
        )

    @app.get("/admin/logs", dependencies=[Depends(enforce_admin_key)])
    def gateway_logs(module: str | None = None, status: str | None = None, limit: int = 50):
        entries = gateway.log_sink.recent(module=module, status=status, limit=max(1, min(limit, 500)))
        return envelope(
            True,
            [
                {
                    "id": entry.id,
                    "module": entry.module,
                    "type": entry.event_type,
                    "message": entry.message,
                    "status": entry.status,
                    "user_id": entry.user_id,
                    "context": entry.context,
                    "date": entry.created_at.isoformat() if entry.created_at else None,
                }
                for entry in entries
            ],
        )

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True, "gateway_available": gateway.is_available()}

    return app


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "DATABASE_DSN", "REDIS_URL", "PROVIDER_BASE_URL", "API_KEY", "FLEECA_ENABLED", "SANDBOX_MODE"],
)
app = create_app(build_gateway())
instrument_app(app)
