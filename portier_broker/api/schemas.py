from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from portier_broker.logging import get_correlation_id

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "not_found",
    "rate_limited",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class AuthParams(BaseModel):
    """Parameters of an authentication request, from the query string or a form."""

    client_id: str = Field(..., max_length=2048)
    redirect_uri: str = Field(..., max_length=2048)
    login_hint: str = Field(..., max_length=320)
    nonce: str = Field(..., min_length=1, max_length=512)
    response_type: str = "id_token"
    scope: str = "openid email"
    response_mode: str = "fragment"
    state: Optional[str] = Field(None, max_length=2048)
    id_token_signed_response_alg: Optional[str] = None


class ConfirmParams(BaseModel):
    session: str = Field(..., min_length=1, max_length=512)
    code: str = Field(..., min_length=1, max_length=64)


class AuthStartedResponse(BaseModel):
    state: str
    session: str


class FormPostResponse(BaseModel):
    redirect_uri: str
    response_mode: str
    params: Dict[str, str]


class KeySetResponse(BaseModel):
    keys: List[Dict[str, str]]


class HealthResponse(BaseModel):
    status: str
    store: str
    keys: str
