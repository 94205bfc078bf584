"""
Translate typed shim failures into HTTP responses.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shim_server.core.errors import (
    AuthorizationDeniedError,
    CredentialExpiredError,
    NotAuthorizedError,
    ProviderConfigurationError,
    ProviderProtocolError,
    ProviderUnavailableError,
    ReauthorizationRequiredError,
    RedirectTargetError,
    ShimError,
    StateKeyAllocationError,
    UnknownCorrelationError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 30

_STATUS_BY_ERROR: Dict[type, HTTPStatus] = {
    UnknownProviderError: HTTPStatus.NOT_FOUND,
    ProviderConfigurationError: HTTPStatus.INTERNAL_SERVER_ERROR,
    UnknownCorrelationError: HTTPStatus.BAD_REQUEST,
    AuthorizationDeniedError: HTTPStatus.FORBIDDEN,
    ProviderProtocolError: HTTPStatus.BAD_GATEWAY,
    CredentialExpiredError: HTTPStatus.UNAUTHORIZED,
    ProviderUnavailableError: HTTPStatus.SERVICE_UNAVAILABLE,
    NotAuthorizedError: HTTPStatus.FORBIDDEN,
    ReauthorizationRequiredError: HTTPStatus.UNAUTHORIZED,
    RedirectTargetError: HTTPStatus.BAD_REQUEST,
    StateKeyAllocationError: HTTPStatus.SERVICE_UNAVAILABLE,
}


def status_for(exc: ShimError) -> HTTPStatus:
    for error_type in type(exc).__mro__:
        if error_type in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[error_type]
    return HTTPStatus.INTERNAL_SERVER_ERROR


async def handle_shim_error(request: Request, exc: ShimError) -> JSONResponse:
    status = status_for(exc)
    content: Dict[str, Any] = {"error": exc.kind, "detail": exc.message}
    if exc.provider_key:
        content["provider_key"] = exc.provider_key
    headers: Dict[str, str] = {}

    if isinstance(exc, RedirectTargetError):
        # The credential was stored; tell the client so it does not retry the handshake.
        content["status"] = "authorized"
        content["user_id"] = exc.outcome.user_id
        content["details"] = exc.outcome.resolution.details
    if exc.retryable:
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)

    if status >= HTTPStatus.INTERNAL_SERVER_ERROR:
        logger.error("%s on %s: %s", exc.kind, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ShimError, handle_shim_error)


__all__ = ["handle_shim_error", "register_exception_handlers", "status_for"]
