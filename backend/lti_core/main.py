from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field

from .errors import LTIAuthorizationError, LTIConfigurationError, LTIError
from .service import LTIService, get_lti_boot_error, get_lti_service
from .validator import LaunchValidationResult


logger = logging.getLogger(__name__)


app = FastAPI(title="LTI 1.3 Core", version="1.0.0")


class HealthResponse(BaseModel):
    status: str
    lti_ready: bool
    boot_error: str | None = None


class LaunchValidationResponse(BaseModel):
    valid: bool
    registration_id: str | None = None
    message_type: str | None = None
    successes: list[str] = Field(default_factory=list)
    error: str | None = None
    claims: dict[str, Any] | None = None


def _resolve_lti_service() -> LTIService:
    try:
        return get_lti_service()
    except LTIConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _http_error(exc: LTIError) -> HTTPException:
    if isinstance(exc, LTIConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, LTIAuthorizationError):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


async def _request_parameters(request: Request) -> dict[str, str]:
    parameters: dict[str, str] = dict(request.query_params)
    # Pour les requêtes POST, les paramètres du formulaire priment sur la query string
    if request.method == "POST":
        form_data = await request.form()
        for key, value in form_data.items():
            if isinstance(value, str):
                parameters[key] = value
    return parameters


def _validation_response(result: LaunchValidationResult, response: Response) -> LaunchValidationResponse:
    if result.has_error:
        response.status_code = status.HTTP_400_BAD_REQUEST
    payload = result.payload
    return LaunchValidationResponse(
        valid=not result.has_error,
        registration_id=result.registration.identifier if result.registration else None,
        message_type=payload.message_type if payload else None,
        successes=list(result.successes),
        error=result.error,
        claims=dict(payload.token.claims) if payload else None,
    )


@app.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    boot_error = get_lti_boot_error()
    return HealthResponse(
        status="ok",
        lti_ready=boot_error is None,
        boot_error=str(boot_error) if boot_error else None,
    )


@app.get("/lti/login")
@app.post("/lti/login")
async def lti_initiate_login(
    request: Request,
    service: LTIService = Depends(_resolve_lti_service),
) -> RedirectResponse:
    """Handle OIDC third-party initiated login from an LTI platform."""
    parameters = await _request_parameters(request)
    try:
        message = service.initiate_login(parameters)
    except LTIError as exc:
        logger.warning("Initiation OIDC refusée: %s", exc)
        raise _http_error(exc) from exc
    return RedirectResponse(url=message.to_url(), status_code=302)


@app.post("/lti/launch", response_model=LaunchValidationResponse)
async def lti_launch(
    request: Request,
    response: Response,
    service: LTIService = Depends(_resolve_lti_service),
) -> LaunchValidationResponse:
    """Validate a platform originating launch (id_token + state)."""
    parameters = await _request_parameters(request)
    try:
        result = service.validate_launch(parameters)
    except LTIError as exc:
        logger.warning("Lancement LTI rejeté: %s", exc)
        raise _http_error(exc) from exc
    return _validation_response(result, response)


@app.get("/lti/platform/auth")
@app.post("/lti/platform/auth")
async def lti_platform_authenticate(
    request: Request,
    service: LTIService = Depends(_resolve_lti_service),
) -> HTMLResponse:
    """Answer an OIDC authentication request with an auto-submitted id_token form."""
    parameters = await _request_parameters(request)
    try:
        message = service.authenticate(parameters)
    except LTIError as exc:
        logger.warning("Authentification OIDC refusée: %s", exc)
        raise _http_error(exc) from exc
    return HTMLResponse(content=message.to_html_form())


@app.get("/lti/platform/return", response_model=LaunchValidationResponse)
@app.post("/lti/platform/return", response_model=LaunchValidationResponse)
async def lti_platform_return(
    request: Request,
    response: Response,
    service: LTIService = Depends(_resolve_lti_service),
) -> LaunchValidationResponse:
    """Validate a tool originating message carried by a single JWT parameter."""
    parameters = await _request_parameters(request)
    try:
        result = service.validate_tool_message(parameters)
    except LTIError as exc:
        logger.warning("Message de l'outil rejeté: %s", exc)
        raise _http_error(exc) from exc
    return _validation_response(result, response)
