from __future__ import annotations

from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from portier_broker.api.schemas import (
    AuthParams,
    AuthStartedResponse,
    ConfirmParams,
    Envelope,
    FormPostResponse,
    KeySetResponse,
)
from portier_broker.service.broker import AuthRequest, FlowState
from portier_broker.service.errors import ValidationError
from portier_broker.service.runtime import get_runtime

router = APIRouter()

_ParamsT = TypeVar("_ParamsT", bound=BaseModel)

_NO_STORE = {"Cache-Control": "no-store"}


async def _read_params(request: Request, model: Type[_ParamsT]) -> _ParamsT:
    """Collect parameters from the query string (GET) or form body (POST)."""
    if request.method == "POST":
        form = await request.form()
        raw: Dict[str, Any] = {key: value for key, value in form.items() if isinstance(value, str)}
    else:
        raw = dict(request.query_params)
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise ValidationError(
            f"invalid parameter: {', '.join(fields)}", detail={"fields": fields}
        ) from exc


def _locale(request: Request) -> Optional[str]:
    header = request.headers.get("accept-language")
    if not header:
        return None
    first = header.split(",")[0].split(";")[0].strip()
    return first or None


@router.api_route("/auth", methods=["GET", "POST"])
async def auth(request: Request):
    params = await _read_params(request, AuthParams)
    auth_request = AuthRequest.from_params(params.model_dump(), locale=_locale(request))
    outcome = await get_runtime().flow.begin_auth(auth_request)
    if outcome.state is FlowState.DELEGATED:
        return RedirectResponse(outcome.redirect_url, status_code=303, headers=_NO_STORE)
    body = AuthStartedResponse(state=outcome.state.value, session=outcome.session or "")
    return JSONResponse(
        Envelope(status="ok", data=body.model_dump()).model_dump(), headers=_NO_STORE
    )


@router.api_route("/confirm", methods=["GET", "POST"])
async def confirm(request: Request):
    params = await _read_params(request, ConfirmParams)
    completed = await get_runtime().flow.complete_auth(params.session, params.code)
    if completed.response_mode == "fragment":
        return RedirectResponse(completed.redirect_url, status_code=303, headers=_NO_STORE)
    body = FormPostResponse(
        redirect_uri=completed.redirect_uri,
        response_mode=completed.response_mode,
        params=completed.params,
    )
    return JSONResponse(
        Envelope(status="ok", data=body.model_dump()).model_dump(), headers=_NO_STORE
    )


@router.get("/keys.json")
async def keys_json():
    runtime = get_runtime()
    body = KeySetResponse(keys=runtime.keys.public_jwks())
    return JSONResponse(
        body.model_dump(),
        headers={"Cache-Control": f"public, max-age={runtime.settings.keys_ttl}"},
    )


@router.get("/.well-known/openid-configuration")
async def openid_configuration():
    runtime = get_runtime()
    return JSONResponse(
        runtime.flow.metadata(),
        headers={"Cache-Control": f"public, max-age={runtime.settings.discovery_ttl}"},
    )
