from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from omegaconf import DictConfig

from .auth import TokenVerifier, bearer_token
from .configuration import MEGABYTE, allowed_origins, get_settings, plan_limits_from_config
from .database import UsageDatabase
from .metering import MeteringGate, Rejected, client_ip
from .models import OperationList, PlanTier, Subject, SystemHealth, UsageLimits, UsageStats
from .plans import PlanResolver
from .proxy import BackendProxy
from .supervisor import BackendSupervisor, probe_health
from .usage_store import UsageStore
from .utils import configure_logging

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@dataclass
class Gateway:
    """Per-application services, stored on ``app.state.gateway``."""

    settings: DictConfig
    store: UsageStore
    verifier: TokenVerifier
    resolver: PlanResolver
    gate: MeteringGate
    supervisor: BackendSupervisor
    proxy: BackendProxy


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def require_admin(
    x_api_key: str = Header(..., alias="X-API-Key"),
    gateway: Gateway = Depends(get_gateway),
) -> None:
    expected = gateway.settings.admin.api_key
    if not expected or x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid admin API key")


def build_gateway(
    settings: DictConfig,
    backend_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Gateway:
    store = UsageStore(UsageDatabase(Path(settings.database.path)))
    verifier = TokenVerifier(
        settings.auth.jwt_secret,
        algorithm=settings.auth.jwt_algorithm,
        ttl_hours=settings.auth.token_ttl_hours,
    )
    resolver = PlanResolver(verifier, store, plan_limits_from_config(settings))
    supervisor = BackendSupervisor(settings.backend)
    proxy = BackendProxy(
        supervisor.handle,
        store,
        settings.proxy,
        metered_prefix=settings.server.metered_prefix,
        transport=backend_transport,
    )
    return Gateway(
        settings=settings,
        store=store,
        verifier=verifier,
        resolver=resolver,
        gate=MeteringGate(resolver),
        supervisor=supervisor,
        proxy=proxy,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Boot the PDF engine before serving; stop it on shutdown."""
    gateway: Gateway = app.state.gateway
    if gateway.settings.backend.autostart:
        await gateway.supervisor.start()
    else:
        logger.info("PDF backend autostart disabled; proxying to %s", gateway.supervisor.base_url)

    yield

    await gateway.supervisor.shutdown()
    await gateway.proxy.aclose()


def _proxy_router(settings: DictConfig) -> APIRouter:
    router = APIRouter()
    metered_prefix = settings.server.metered_prefix.rstrip("/")

    async def metered(request: Request, gateway: Gateway = Depends(get_gateway)) -> Response:
        decision = await gateway.gate.admit(request)
        if isinstance(decision, Rejected):
            return JSONResponse(
                status_code=decision.status_code,
                content=decision.body.model_dump(exclude_none=True),
            )
        request.state.limits = decision.context
        return await gateway.proxy.forward(request, decision.context)

    async def passthrough(request: Request, gateway: Gateway = Depends(get_gateway)) -> Response:
        return await gateway.proxy.forward(request)

    router.add_api_route(
        f"{metered_prefix}/{{path:path}}",
        metered,
        methods=PROXY_METHODS,
        include_in_schema=False,
    )
    for prefix in settings.server.passthrough_prefixes:
        router.add_api_route(
            f"{prefix.rstrip('/')}/{{path:path}}",
            passthrough,
            methods=PROXY_METHODS,
            include_in_schema=False,
        )
    return router


def _api_router() -> APIRouter:
    router = APIRouter()

    @router.get("/healthz")
    def healthcheck() -> dict:
        return {"status": "ok"}

    @router.get("/api/auth/limits", response_model=UsageLimits)
    async def usage_limits(request: Request, gateway: Gateway = Depends(get_gateway)) -> UsageLimits:
        identity = await gateway.resolver.resolve(bearer_token(request))
        tier = identity.tier if identity.is_active else PlanTier.ANONYMOUS
        subject_id = identity.subject_id if identity.is_active else None
        limits = gateway.resolver.limits_for(tier)
        used = await gateway.store.get_count(Subject.for_request(subject_id, client_ip(request)))
        size = limits.max_file_size_bytes
        return UsageLimits(
            used=used,
            limit=limits.max_ops_per_day,
            plan=tier,
            maxFileSizeMB=None if size is None else size // MEGABYTE,
            maxPages=limits.max_pages,
        )

    @router.get("/api/auth/my-operations", response_model=OperationList)
    async def my_operations(request: Request, gateway: Gateway = Depends(get_gateway)) -> OperationList:
        token = bearer_token(request)
        claims = gateway.verifier.verify(token) if token else None
        if claims is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        operations = await gateway.store.user_operations(claims["id"])
        return OperationList(operations=operations)

    @router.get("/api/admin/health", response_model=SystemHealth, dependencies=[Depends(require_admin)])
    async def system_health(gateway: Gateway = Depends(get_gateway)) -> SystemHealth:
        try:
            await gateway.store.ping()
            database = "healthy"
        except Exception:
            logger.exception("Database health check failed")
            database = "error"

        handle = gateway.supervisor.handle
        backend_ok = await probe_health(handle.health_url, timeout=3.0)
        pdf_backend = "healthy" if backend_ok else "error"

        return SystemHealth(
            status="healthy" if database == "healthy" and backend_ok else "degraded",
            components={"database": database, "pdfBackend": pdf_backend, "server": "healthy"},
            backend=handle.status(),
            timestamp=datetime.now(timezone.utc),
        )

    @router.get("/api/admin/stats", response_model=UsageStats, dependencies=[Depends(require_admin)])
    async def usage_stats(gateway: Gateway = Depends(get_gateway)) -> UsageStats:
        return await gateway.store.usage_stats()

    @router.get("/api/admin/activity", response_model=OperationList, dependencies=[Depends(require_admin)])
    async def activity(
        limit: Optional[int] = Query(default=None, ge=1, le=500),
        gateway: Gateway = Depends(get_gateway),
    ) -> OperationList:
        operations = await gateway.store.recent_operations(limit or gateway.settings.admin.activity_limit)
        return OperationList(operations=operations)

    return router


def create_app(
    settings: Optional[DictConfig] = None,
    backend_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Runtime configuration (default: packaged defaults + environment)
        backend_transport: Optional httpx transport for reaching the engine,
            used to run the proxy against an in-process fake

    Returns:
        FastAPI app whose lifespan boots and stops the PDF engine
    """
    settings = settings if settings is not None else get_settings()
    configure_logging(settings.server.log_level)

    app = FastAPI(title="PDF Gateway", version="0.1.0", lifespan=lifespan)
    app.state.gateway = build_gateway(settings, backend_transport)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(_api_router())
    app.include_router(_proxy_router(settings))
    return app


app = create_app()
