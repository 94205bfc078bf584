"""
FastAPI routes exposing the authorization handshake and shim data access.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from http import HTTPStatus
from typing import Annotated, Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from shim_server.core.config import AppSettings
from shim_server.dependencies import (
    get_app_settings,
    get_data_access_service,
    get_handshake_service,
    get_provider_registry,
)
from shim_server.models.records import DataQuery
from shim_server.providers import ProviderRegistry
from shim_server.schemas import (
    AuthorizationSummary,
    AuthorizationsResponse,
    AuthorizeResponse,
    CallbackResolutionResponse,
    DataResponse,
    DeauthorizeResponse,
    RegistryResponse,
    ShimDescription,
)
from shim_server.services import DataAccessService, HandshakeService

router = APIRouter()
logger = logging.getLogger(__name__)

_DATA_QUERY_PARAMS = frozenset(
    {"username", "date_start", "date_end", "num_to_return"}
)


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.get("/registry", status_code=HTTPStatus.OK, response_model=RegistryResponse)
async def list_shims(
    registry: Annotated[ProviderRegistry, Depends(get_provider_registry)],
    settings: Annotated[AppSettings, Depends(get_app_settings)],
) -> RegistryResponse:
    """List every registered shim, its data types and its callback URL."""
    return RegistryResponse(
        shims=[
            ShimDescription(**entry, callback_url=settings.callback_url_for(entry["key"]))
            for entry in registry.describe()
        ]
    )


@router.get("/authorize/{shim}", status_code=HTTPStatus.OK)
async def authorize(
    shim: str,
    request: Request,
    handshake: Annotated[HandshakeService, Depends(get_handshake_service)],
    username: str = Query(..., min_length=1, description="User authorizing the shim."),
    client_redirect_url: Optional[str] = Query(
        default=None,
        description="Where to send the user once the provider calls back.",
    ),
    redirect: bool = Query(
        default=False,
        description="When true, respond with a redirect to the provider consent screen.",
    ),
) -> Any:
    """
    Start a handshake: persist the pending request and return the consent URL.
    """
    is_authorized = handshake.is_authorized(user_id=username, provider_key=shim)
    params = handshake.start(
        user_id=username,
        provider_key=shim,
        client_redirect_url=client_redirect_url,
    )

    accept_header = request.headers.get("accept", "")
    wants_html = "text/html" in accept_header.lower()
    if redirect or wants_html:
        return RedirectResponse(
            url=params.authorization_url, status_code=HTTPStatus.TEMPORARY_REDIRECT
        )

    return AuthorizeResponse(
        provider_key=params.provider_key,
        user_id=params.user_id,
        state_key=params.state_key,
        authorization_url=params.authorization_url,
        client_redirect_url=params.client_redirect_url,
        expires_at=params.expires_at,
        is_authorized=is_authorized,
    )


@router.api_route(
    "/authorize/{shim}/callback",
    methods=["GET", "POST"],
    status_code=HTTPStatus.OK,
)
async def authorize_callback(
    shim: str,
    request: Request,
    handshake: Annotated[HandshakeService, Depends(get_handshake_service)],
) -> Response:
    """Handle the provider's redirect back after the user approves or denies."""
    payload = await _callback_parameters(request)
    outcome = await handshake.complete_callback(provider_key=shim, payload=payload)

    if outcome.should_redirect:
        return RedirectResponse(url=outcome.redirect_url, status_code=HTTPStatus.FOUND)

    body = CallbackResolutionResponse(
        status=outcome.resolution.status,
        provider_key=outcome.provider_key,
        user_id=outcome.user_id,
        details=outcome.resolution.details,
    )
    return JSONResponse(content=body.model_dump(mode="json"))


@router.delete(
    "/de-authorize/{shim}",
    status_code=HTTPStatus.OK,
    response_model=DeauthorizeResponse,
)
async def deauthorize(
    shim: str,
    data_access: Annotated[DataAccessService, Depends(get_data_access_service)],
    username: str = Query(..., min_length=1),
) -> DeauthorizeResponse:
    """Remove every stored credential the user holds for a shim."""
    removed = data_access.revoke(user_id=username, provider_key=shim)
    return DeauthorizeResponse(provider_key=shim, user_id=username, removed=removed)


@router.get(
    "/authorizations",
    status_code=HTTPStatus.OK,
    response_model=AuthorizationsResponse,
)
async def list_authorizations(
    handshake: Annotated[HandshakeService, Depends(get_handshake_service)],
    username: str = Query(..., min_length=1),
) -> AuthorizationsResponse:
    """List the shims a user has authorized."""
    summaries = handshake.list_authorizations(user_id=username)
    return AuthorizationsResponse(
        user_id=username,
        authorizations=[AuthorizationSummary(**summary) for summary in summaries],
    )


@router.get(
    "/data/{shim}/{data_type}",
    status_code=HTTPStatus.OK,
    response_model=DataResponse,
)
async def fetch_data(
    shim: str,
    data_type: str,
    request: Request,
    data_access: Annotated[DataAccessService, Depends(get_data_access_service)],
    username: str = Query(..., min_length=1),
    date_start: Optional[date] = Query(default=None),
    date_end: Optional[date] = Query(default=None),
    num_to_return: Optional[int] = Query(default=None, ge=1),
) -> DataResponse:
    """Retrieve raw data for one data type using the user's newest credential."""
    if date_start and date_end and date_start > date_end:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail="date_start must not be after date_end.",
        )
    extra = {
        key: value
        for key, value in request.query_params.items()
        if key not in _DATA_QUERY_PARAMS
    }
    query = DataQuery(
        date_start=date_start,
        date_end=date_end,
        num_to_return=num_to_return,
        extra=extra,
    )
    payload = await data_access.get_data(
        user_id=username,
        provider_key=shim,
        data_type=data_type,
        query=query,
    )
    return DataResponse(
        provider_key=payload.provider_key,
        data_type=payload.data_type,
        retrieved_at=payload.retrieved_at,
        body=payload.body,
    )


async def _callback_parameters(request: Request) -> Dict[str, Any]:
    """Merge query string and body parameters of a provider callback."""
    params: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return params

    raw_body = await request.body()
    if not raw_body:
        return params
    content_type = request.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise HTTPException(
                status_code=HTTPStatus.BAD_REQUEST,
                detail="Callback body is not valid JSON.",
            ) from exc
        if isinstance(body, dict):
            params.update(body)
    elif "application/x-www-form-urlencoded" in content_type:
        try:
            text = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise HTTPException(
                status_code=HTTPStatus.BAD_REQUEST,
                detail="Callback body is not valid UTF-8.",
            ) from exc
        params.update(parse_qsl(text, keep_blank_values=True))
    return params


__all__ = ["router"]
