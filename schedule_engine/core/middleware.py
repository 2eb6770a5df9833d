"""CORS and request-context middleware."""

import uuid
import time
import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from schedule_engine.core.config import settings
from schedule_engine.core.context import tenant_context

logger = logging.getLogger("schedule_engine")

TENANT_HEADER = "x-tenant-id"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind the caller's tenant for the request and tag the response.

    Requests without a tenant header run against the platform database.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        tenant_id = request.headers.get(TENANT_HEADER) or None
        request.state.request_id = request_id
        start_time = time.time()

        with tenant_context(tenant_id, requestId=request_id):
            response: Response = await call_next(request)

        duration = round((time.time() - start_time) * 1000, 2)
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time-Ms"] = str(duration)
        if response.status_code >= 500:
            logger.error("%s %s %s %sms [%s]", request.method, request.url.path,
                         response.status_code, duration, tenant_id or "platform")
        else:
            logger.info("%s %s %s %sms [%s]", request.method, request.url.path,
                        response.status_code, duration, tenant_id or "platform")
        return response


def setup_middleware(app: FastAPI) -> None:
    """Configure all middleware for the application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )

    # Tenant binding + request id + timing
    app.add_middleware(RequestContextMiddleware)
