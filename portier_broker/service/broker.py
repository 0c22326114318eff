"""Authentication flow from the relying party's request to the signed token."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode, urlsplit

from portier_broker.crypto import SigningAlgorithm
from portier_broker.logging import email_hash, get_logger
from portier_broker.service.discovery import Delegate, DiscoveryResolver, Relation
from portier_broker.service.email import EmailDispatcher
from portier_broker.service.errors import DispatchError, ServerError, ValidationError
from portier_broker.service.keys import KeyManager
from portier_broker.service.sessions import AuthSessionManager

logger = get_logger(__name__)

RESPONSE_MODES = ("fragment", "form_post")


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_USER_ACTION = "awaiting_user_action"
    DELEGATED = "delegated"
    COMPLETED = "completed"


_TRANSITIONS = {
    FlowState.IDLE: {FlowState.AWAITING_USER_ACTION, FlowState.DELEGATED},
    FlowState.AWAITING_USER_ACTION: {FlowState.COMPLETED},
    FlowState.DELEGATED: set(),
    FlowState.COMPLETED: set(),
}


@dataclass
class AuthAttempt:
    state: FlowState = FlowState.IDLE

    def advance(self, target: FlowState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise ServerError(f"invalid auth transition {self.state.value} -> {target.value}")
        self.state = target


@dataclass
class AuthRequest:
    client_id: str
    redirect_uri: str
    login_hint: str
    nonce: str
    response_type: str = "id_token"
    scope: str = "openid email"
    response_mode: str = "fragment"
    state: Optional[str] = None
    id_token_signed_response_alg: Optional[str] = None
    locale: Optional[str] = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any], *, locale: Optional[str] = None) -> "AuthRequest":
        missing = [
            name
            for name in ("client_id", "redirect_uri", "login_hint", "nonce")
            if not params.get(name)
        ]
        if missing:
            raise ValidationError(
                f"missing parameter: {', '.join(missing)}", detail={"missing": missing}
            )
        return cls(
            client_id=str(params["client_id"]),
            redirect_uri=str(params["redirect_uri"]),
            login_hint=str(params["login_hint"]),
            nonce=str(params["nonce"]),
            response_type=str(params.get("response_type") or "id_token"),
            scope=str(params.get("scope") or "openid email"),
            response_mode=str(params.get("response_mode") or "fragment"),
            state=params.get("state") or None,
            id_token_signed_response_alg=params.get("id_token_signed_response_alg") or None,
            locale=locale,
        )

    def to_params(self) -> Dict[str, str]:
        params = {
            "login_hint": self.login_hint,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "nonce": self.nonce,
            "response_type": self.response_type,
            "scope": self.scope,
            "response_mode": self.response_mode,
        }
        if self.state:
            params["state"] = self.state
        if self.id_token_signed_response_alg:
            params["id_token_signed_response_alg"] = self.id_token_signed_response_alg
        return params


@dataclass
class AuthOutcome:
    state: FlowState
    redirect_url: Optional[str] = None
    session: Optional[str] = None


@dataclass
class CompletedAuth:
    redirect_uri: str
    response_mode: str
    params: Dict[str, str] = field(default_factory=dict)
    state: FlowState = FlowState.COMPLETED

    @property
    def redirect_url(self) -> str:
        return f"{self.redirect_uri}#{urlencode(self.params)}"


def normalize_email(raw: str) -> str:
    """Trim, lowercase and IDNA-encode the domain of an email address."""
    value = (raw or "").strip()
    local, sep, domain = value.rpartition("@")
    if not sep or not local or not domain or any(ch.isspace() for ch in value):
        raise ValidationError("invalid email address")
    try:
        ascii_domain = domain.lower().encode("idna").decode("ascii")
    except UnicodeError:
        raise ValidationError("invalid email address") from None
    return f"{local.lower()}@{ascii_domain}"


def parse_origin(value: str) -> str:
    """Return ``value`` if it is a bare http(s) origin, else raise ValidationError."""
    parts = urlsplit(value or "")
    if (
        parts.scheme not in ("http", "https")
        or not parts.hostname
        or parts.username
        or parts.password
        or parts.path not in ("", "/")
        or parts.query
        or parts.fragment
    ):
        raise ValidationError("client_id must be an origin")
    return f"{parts.scheme}://{parts.netloc.lower()}"


def origin_of(url: str) -> Optional[str]:
    parts = urlsplit(url or "")
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc.lower()}"


class AuthFlow:
    """Protocol state machine tying discovery, sessions, email and keys together.

    ``begin_auth`` ends either ``DELEGATED`` (redirect to another provider,
    no session) or ``AWAITING_USER_ACTION`` (session stored, email sent).
    ``complete_auth`` is the only way to reach ``COMPLETED``; a failed
    confirmation leaves nothing to retry.
    """

    def __init__(
        self,
        *,
        public_url: str,
        resolver: DiscoveryResolver,
        sessions: AuthSessionManager,
        keys: KeyManager,
        email: EmailDispatcher,
        token_ttl: int = 600,
        allowed_origins: Optional[List[str]] = None,
        google_client_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.public_url = public_url.rstrip("/")
        self.resolver = resolver
        self.sessions = sessions
        self.keys = keys
        self.email = email
        self.token_ttl = token_ttl
        self.allowed_origins = (
            {origin.rstrip("/").lower() for origin in allowed_origins}
            if allowed_origins is not None
            else None
        )
        self.google_client_id = google_client_id
        self._clock = clock

    def _validate(self, request: AuthRequest) -> SigningAlgorithm:
        origin = parse_origin(request.client_id)
        if self.allowed_origins is not None and origin not in self.allowed_origins:
            raise ValidationError("client_id is not allowed to use this broker")
        if origin_of(request.redirect_uri) != origin:
            raise ValidationError("redirect_uri must share the client_id origin")
        if request.response_type != "id_token":
            raise ValidationError("unsupported response_type")
        scopes = set(request.scope.split())
        if not {"openid", "email"} <= scopes:
            raise ValidationError("scope must include openid and email")
        if request.response_mode not in RESPONSE_MODES:
            raise ValidationError("unsupported response_mode")
        if request.id_token_signed_response_alg is None:
            return self.keys.default_alg
        try:
            alg = SigningAlgorithm.parse(request.id_token_signed_response_alg)
        except ValueError:
            raise ValidationError("unsupported id_token_signed_response_alg") from None
        if alg not in self.keys.algs:
            raise ValidationError("unsupported id_token_signed_response_alg")
        return alg

    def delegation_url(self, delegate: Delegate, request: AuthRequest) -> str:
        params = request.to_params()
        if delegate.relation is Relation.GOOGLE:
            if self.google_client_id:
                params["client_id"] = self.google_client_id
            return f"{delegate.href}/o/oauth2/v2/auth?{urlencode(params)}"
        return f"{delegate.href}/auth?{urlencode(params)}"

    async def begin_auth(self, request: AuthRequest) -> AuthOutcome:
        attempt = AuthAttempt()
        alg = self._validate(request)
        email = normalize_email(request.login_hint)
        domain = email.rpartition("@")[2]

        resolution = await self.resolver.resolve(domain, email)
        if isinstance(resolution, Delegate):
            attempt.advance(FlowState.DELEGATED)
            logger.info(
                "auth_delegated",
                subject=email_hash(email),
                relation=resolution.relation.value,
                client_id=request.client_id,
            )
            return AuthOutcome(
                state=attempt.state, redirect_url=self.delegation_url(resolution, request)
            )

        handle = await self.sessions.begin(
            email,
            request.client_id,
            request.redirect_uri,
            request.nonce,
            email_original=request.login_hint.strip(),
            response_mode=request.response_mode,
            state=request.state,
            signing_alg=alg.value,
        )
        link = f"{self.public_url}/confirm?{urlencode({'session': handle.nonce, 'code': handle.code})}"
        try:
            sent = await self.email.send_confirmation(
                email, link, handle.display_code, request.locale
            )
        except Exception as exc:
            logger.error("email_dispatch_error", error_type=type(exc).__name__, error=str(exc))
            sent = False
        if not sent:
            await self.sessions.discard(handle.nonce)
            logger.warning("auth_dispatch_failed", subject=email_hash(email))
            raise DispatchError()
        attempt.advance(FlowState.AWAITING_USER_ACTION)
        return AuthOutcome(state=attempt.state, session=handle.nonce)

    async def complete_auth(self, nonce: str, code: str) -> CompletedAuth:
        attempt = AuthAttempt(state=FlowState.AWAITING_USER_ACTION)
        session = await self.sessions.confirm(nonce, code)
        now = int(self._clock())
        claims = {
            "iss": self.public_url,
            "aud": session.client_id,
            "sub": session.email,
            "email": session.email,
            "email_original": session.email_original,
            "email_verified": True,
            "nonce": session.nonce,
            "iat": now,
            "exp": now + self.token_ttl,
        }
        token = self.keys.sign(claims, session.signing_alg)
        params = {"id_token": token}
        if session.state:
            params["state"] = session.state
        attempt.advance(FlowState.COMPLETED)
        logger.info("auth_completed", subject=email_hash(session.email), client_id=session.client_id)
        return CompletedAuth(
            redirect_uri=session.redirect_uri,
            response_mode=session.response_mode,
            params=params,
        )

    def metadata(self) -> Dict[str, Any]:
        """OpenID provider metadata served at the well-known configuration URL."""
        return {
            "issuer": self.public_url,
            "authorization_endpoint": f"{self.public_url}/auth",
            "jwks_uri": f"{self.public_url}/keys.json",
            "scopes_supported": ["openid", "email"],
            "claims_supported": [
                "iss",
                "aud",
                "exp",
                "iat",
                "sub",
                "email",
                "email_original",
                "email_verified",
                "nonce",
            ],
            "response_types_supported": ["id_token"],
            "response_modes_supported": list(RESPONSE_MODES),
            "grant_types_supported": ["implicit"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [alg.value for alg in self.keys.algs],
        }
