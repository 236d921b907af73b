"""
Membership Service

Entry point for the FastAPI application. Lifecycle routes are mounted by the
embedding deployment; this module composes the services and maps lifecycle
errors onto HTTP responses.
"""

from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from membership_service.core.config import Settings, get_settings
from membership_service.core.container import build_services
from membership_service.core.events import Publisher
from membership_service.core.exceptions import MembershipError
from membership_service.core.identity import AuthorityClient
from membership_service.core.logging import configure_logging
from membership_service.core.redis import close_redis, get_redis

log = structlog.get_logger()

STATUS_BY_CODE = {
    "not_found": 404,
    "not_authorized": 403,
    "forbidden": 403,
    "self_removal_forbidden": 403,
    "not_pending": 409,
    "wrong_organization": 409,
    "conflicting_proposal": 409,
    "admin_conflict": 409,
    "slug_taken": 409,
    "expired": 410,
    "no_roles": 422,
    "authority_rejected": 502,
    "authority_unavailable": 503,
}


async def membership_error_handler(request: Request, exc: MembershipError) -> JSONResponse:
    status = STATUS_BY_CODE.get(exc.code, 400)
    if status >= 500:
        log.warning("request.authority_failure", path=request.url.path, code=exc.code, error=exc.message)
    headers = {"Retry-After": "30"} if getattr(exc, "retryable", False) else None
    return JSONResponse(
        status_code=status,
        content={"code": exc.code, "detail": exc.message},
        headers=headers,
    )


def create_app(
    settings: Optional[Settings] = None,
    redis: Optional[Publisher] = None,
    authority: Optional[AuthorityClient] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Membership Service",
        description="Organization membership lifecycle and role reconciliation.",
        version="0.1.0",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(MembershipError, membership_error_handler)
    app.state.settings = settings
    app.state.services = None

    @app.on_event("startup")
    async def on_startup():
        app.state.services = build_services(settings, redis or await get_redis(), authority)
        log.info("Membership service starting", realm=settings.keycloak_realm)

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("Membership service shutting down")
        await close_redis()

    return app
