"""Identity provider discovery for email domains.

A domain is either self-handled (the broker emails a confirmation code) or
delegated to an external provider. Static overrides are consulted first,
then a cached record, then a live WebFinger lookup.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Union
from urllib.parse import urlencode, urlsplit

import httpx

from portier_broker.logging import email_hash, get_logger
from portier_broker.storage.base import Store, discovery_key
from portier_broker.storage.models import DiscoveryRecord

logger = get_logger(__name__)

GOOGLE_IDP_ORIGIN = "https://accounts.google.com"

_MAX_AGE = re.compile(r"max-age\s*=\s*\"?(\d+)\"?", re.IGNORECASE)


class Relation(str, Enum):
    PORTIER = "https://portier.io/specs/auth/1.0/idp"
    GOOGLE = "https://portier.io/specs/auth/1.0/idp/google"


class ParseLinkError(ValueError):
    """A link has an unsupported relation or an unusable href."""


class DiscoveryFailure(Exception):
    """Live lookup failed; always recovered as self-handling."""


@dataclass(frozen=True)
class Link:
    rel: Relation
    href: str

    @classmethod
    def parse(cls, rel: str, href: str) -> "Link":
        try:
            relation = Relation(rel)
        except ValueError:
            raise ParseLinkError(f"unsupported relation: {rel!r}") from None
        parts = urlsplit(href or "")
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ParseLinkError(f"invalid href: {href!r}")
        return cls(rel=relation, href=href.rstrip("/"))


@dataclass(frozen=True)
class SelfHandle:
    pass


@dataclass(frozen=True)
class Delegate:
    relation: Relation
    href: str


Resolution = Union[SelfHandle, Delegate]

SELF_HANDLE = SelfHandle()


@dataclass
class FetchResult:
    status: int
    body: bytes
    max_age: Optional[int] = None


class Fetcher(Protocol):
    async def fetch(self, url: str) -> FetchResult:
        """Fetch ``url``; raise on transport failure."""


def parse_max_age(cache_control: Optional[str]) -> Optional[int]:
    """Extract ``max-age`` from a Cache-Control header; ``no-store`` yields None."""
    if not cache_control:
        return None
    lowered = cache_control.lower()
    if "no-store" in lowered or "no-cache" in lowered:
        return None
    match = _MAX_AGE.search(cache_control)
    return int(match.group(1)) if match else None


class HttpxFetcher:
    """Fetcher backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 5.0,
        max_body_bytes: int = 64 * 1024,
    ) -> None:
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=False)
        self.max_body_bytes = max_body_bytes

    async def fetch(self, url: str) -> FetchResult:
        try:
            response = await self.client.get(
                url, headers={"Accept": "application/jrd+json, application/json"}
            )
        except httpx.HTTPError as exc:
            raise DiscoveryFailure(f"request failed: {exc.__class__.__name__}") from exc
        body = response.content
        if len(body) > self.max_body_bytes:
            raise DiscoveryFailure("webfinger document too large")
        return FetchResult(
            status=response.status_code,
            body=body,
            max_age=parse_max_age(response.headers.get("cache-control")),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def webfinger_url(domain: str, email: Optional[str] = None) -> str:
    resource = f"acct:{email}" if email else f"acct:@{domain}"
    return f"https://{domain}/.well-known/webfinger?{urlencode({'resource': resource})}"


def parse_webfinger(body: bytes) -> Optional[Link]:
    """Return the first supported link in a JRD document.

    Raises DiscoveryFailure when the document is not a JSON object.
    """
    try:
        document = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise DiscoveryFailure("malformed webfinger document") from exc
    if not isinstance(document, dict):
        raise DiscoveryFailure("webfinger document is not an object")
    links = document.get("links") or []
    if not isinstance(links, list):
        raise DiscoveryFailure("webfinger links is not a list")
    for entry in links:
        if not isinstance(entry, dict):
            continue
        try:
            return Link.parse(entry.get("rel", ""), entry.get("href", ""))
        except ParseLinkError:
            continue
    return None


class DiscoveryResolver:
    """Resolves a domain to self-handling or a delegated provider.

    Overrides are immutable for the life of the resolver and bypass both the
    cache and the network. Live results are cached for
    ``max(cache_ttl, max-age)`` seconds; lookups that fail for any reason
    resolve to self-handling.
    """

    def __init__(
        self,
        store: Store,
        fetcher: Fetcher,
        *,
        overrides: Optional[Dict[str, List[Link]]] = None,
        cache_ttl: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.overrides: Dict[str, List[Link]] = {
            domain.lower(): list(links) for domain, links in (overrides or {}).items()
        }
        self.cache_ttl = cache_ttl
        self._clock = clock

    async def resolve(self, domain: str, email: Optional[str] = None) -> Resolution:
        domain = domain.strip().lower()
        links = self.overrides.get(domain)
        if links:
            link = links[0]
            return Delegate(relation=link.rel, href=link.href)

        cached = await self.store.get(discovery_key(domain))
        if cached is not None:
            try:
                return self._from_record(DiscoveryRecord.from_json(cached))
            except (ValueError, KeyError) as exc:
                logger.warning("discovery_cache_corrupt", domain=domain, error=str(exc))

        resolution, max_age = await self._lookup(domain, email)
        ttl = max(self.cache_ttl, max_age or 0)
        record = DiscoveryRecord(
            domain=domain,
            kind=DiscoveryRecord.DELEGATE if isinstance(resolution, Delegate) else DiscoveryRecord.SELF,
            relation=resolution.relation.value if isinstance(resolution, Delegate) else None,
            href=resolution.href if isinstance(resolution, Delegate) else None,
            expires_at=self._clock() + ttl,
        )
        await self.store.put(discovery_key(domain), record.to_json(), ttl)
        return resolution

    async def _lookup(self, domain: str, email: Optional[str]):
        url = webfinger_url(domain, email)
        try:
            result = await self.fetcher.fetch(url)
            if result.status != 200:
                logger.info("discovery_no_document", domain=domain, status=result.status)
                return SELF_HANDLE, result.max_age
            link = parse_webfinger(result.body)
        except Exception as exc:
            logger.info(
                "discovery_lookup_failed",
                domain=domain,
                subject=email_hash(email) if email else None,
                error=str(exc),
            )
            return SELF_HANDLE, None
        if link is None:
            return SELF_HANDLE, result.max_age
        logger.info("discovery_delegated", domain=domain, relation=link.rel.value)
        return Delegate(relation=link.rel, href=link.href), result.max_age

    @staticmethod
    def _from_record(record: DiscoveryRecord) -> Resolution:
        if record.is_delegate:
            return Delegate(relation=Relation(record.relation), href=record.href or "")
        return SELF_HANDLE
