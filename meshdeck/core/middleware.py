"""CORS, request-id, and logging middleware."""

import re
import uuid
import time
import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from meshdeck.core.config import settings
from meshdeck.core.security import SESSION_HEADER
from meshdeck.services.audit_service import AUDIT_STATUS_HEADER

logger = logging.getLogger("meshdeck")

REQUEST_ID_HEADER = "X-Request-Id"

# Client-supplied ids outside this shape are replaced, never echoed or logged
REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def request_id_for(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER)
    if incoming and REQUEST_ID_PATTERN.fullmatch(incoming):
        return incoming
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every request/response with a request ID and log its outcome.

    Also forwards a session token re-issued during authorization, so error
    responses carry it as well.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request_id_for(request)
        request.state.request_id = request_id
        start_time = time.time()

        response: Response = await call_next(request)

        duration = round((time.time() - start_time) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time-Ms"] = str(duration)
        refreshed = getattr(request.state, "refreshed_session", None)
        if refreshed and SESSION_HEADER not in response.headers:
            response.headers[SESSION_HEADER] = refreshed

        logger.info(
            "%s %s %s %sms audit=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration,
            response.headers.get(AUDIT_STATUS_HEADER, "-"),
        )
        return response


def setup_middleware(app: FastAPI) -> None:
    """Configure all middleware for the application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER, SESSION_HEADER, AUDIT_STATUS_HEADER],
    )

    app.add_middleware(RequestIdMiddleware)
