from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from typing import Optional

from portier_broker.logging import email_hash, get_logger
from portier_broker.service.errors import CodeMismatch, RateLimitedError, SessionNotFound
from portier_broker.service.rate_limit import RateLimiter
from portier_broker.storage.base import Store, session_key
from portier_broker.storage.models import Session

logger = get_logger(__name__)

# No 0/o, 1/l/i: codes are typed by hand
CODE_ALPHABET = "abcdefghjkmnpqrstuvwxyz23456789"
CODE_LENGTH = 12


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def format_code(code: str) -> str:
    half = CODE_LENGTH // 2
    return f"{code[:half]} {code[half:]}"


def normalize_code(code: str) -> str:
    return "".join((code or "").split()).lower()


@dataclass(frozen=True)
class SessionHandle:
    nonce: str
    code: str
    session: Session

    @property
    def display_code(self) -> str:
        return format_code(self.code)


class AuthSessionManager:
    """Creates and consumes one-time email confirmation sessions.

    A session is consumed by the first ``confirm`` call whatever its outcome,
    so a wrong code forces the user to start over.
    """

    def __init__(self, store: Store, limiter: RateLimiter, *, session_ttl: int = 900) -> None:
        self.store = store
        self.limiter = limiter
        self.session_ttl = session_ttl

    async def begin(
        self,
        email: str,
        client_id: str,
        redirect_uri: str,
        nonce: str,
        *,
        email_original: Optional[str] = None,
        response_mode: str = "fragment",
        state: Optional[str] = None,
        signing_alg: str = "RS256",
    ) -> SessionHandle:
        decision = await self.limiter.check_and_increment(email)
        if not decision.allowed:
            raise RateLimitedError(retry_after=decision.retry_after)

        code = generate_code()
        session = Session(
            nonce=nonce,
            email=email,
            email_original=email_original or email,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code=code,
            response_mode=response_mode,
            state=state,
            signing_alg=signing_alg,
        )
        await self.store.put(session_key(nonce), session.to_json(), self.session_ttl)
        logger.info("session_created", subject=email_hash(email), client_id=client_id)
        return SessionHandle(nonce=nonce, code=code, session=session)

    async def confirm(self, nonce: str, code: str) -> Session:
        raw = await self.store.take(session_key(nonce))
        if raw is None:
            logger.info("session_not_found")
            raise SessionNotFound()
        try:
            session = Session.from_json(raw)
        except (ValueError, TypeError) as exc:
            logger.error("session_corrupt", error=str(exc))
            raise SessionNotFound() from None
        supplied = normalize_code(code).encode("utf-8")
        if not hmac.compare_digest(supplied, session.code.encode("utf-8")):
            logger.info("session_code_mismatch", subject=email_hash(session.email))
            raise CodeMismatch()
        logger.info("session_confirmed", subject=email_hash(session.email))
        return session

    async def discard(self, nonce: str) -> None:
        await self.store.delete(session_key(nonce))
