from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass
class Session:
    """One in-flight email confirmation, stored under ``session:<nonce>``."""

    nonce: str
    email: str
    email_original: str
    client_id: str
    redirect_uri: str
    code: str
    response_mode: str = "fragment"
    state: Optional[str] = None
    signing_alg: str = "RS256"
    created_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "Session":
        data: Dict[str, Any] = json.loads(raw)
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


@dataclass
class DiscoveryRecord:
    """Resolution of a domain: ``self`` or ``delegate`` to ``relation``/``href``."""

    domain: str
    kind: str
    relation: Optional[str] = None
    href: Optional[str] = None
    expires_at: Optional[float] = None

    SELF = "self"
    DELEGATE = "delegate"

    @property
    def is_delegate(self) -> bool:
        return self.kind == self.DELEGATE

    def to_json(self) -> str:
        return json.dumps(
            {
                "domain": self.domain,
                "kind": self.kind,
                "relation": self.relation,
                "href": self.href,
                "expires_at": self.expires_at,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "DiscoveryRecord":
        data = json.loads(raw)
        if data.get("kind") not in (cls.SELF, cls.DELEGATE):
            raise ValueError(f"unknown discovery record kind: {data.get('kind')!r}")
        return cls(
            domain=data["domain"],
            kind=data["kind"],
            relation=data.get("relation"),
            href=data.get("href"),
            expires_at=data.get("expires_at"),
        )
