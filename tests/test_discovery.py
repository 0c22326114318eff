import httpx
import pytest

from portier_broker.service.discovery import (
    GOOGLE_IDP_ORIGIN,
    Delegate,
    DiscoveryFailure,
    DiscoveryResolver,
    FetchResult,
    HttpxFetcher,
    Link,
    ParseLinkError,
    Relation,
    SelfHandle,
    parse_max_age,
    parse_webfinger,
    webfinger_url,
)
from portier_broker.storage.base import discovery_key


def _resolver(store, fetcher, clock, **kwargs):
    return DiscoveryResolver(store, fetcher, clock=clock, cache_ttl=kwargs.pop("cache_ttl", 3600), **kwargs)


async def test_override_wins_without_network(memory_store, clock, fetcher_factory):
    fetcher = fetcher_factory(
        result=fetcher_factory.webfinger(Relation.PORTIER.value, "https://other-idp.example")
    )
    resolver = _resolver(
        memory_store,
        fetcher,
        clock,
        overrides={"example.com": [Link(Relation.GOOGLE, GOOGLE_IDP_ORIGIN)]},
    )
    result = await resolver.resolve("example.com", "user@example.com")
    assert result == Delegate(relation=Relation.GOOGLE, href=GOOGLE_IDP_ORIGIN)
    assert fetcher.calls == []
    assert await memory_store.get(discovery_key("example.com")) is None


async def test_override_beats_cached_record(memory_store, clock, fetcher_factory):
    fetcher = fetcher_factory(
        result=fetcher_factory.webfinger(Relation.PORTIER.value, "https://other-idp.example")
    )
    live = _resolver(memory_store, fetcher, clock)
    assert isinstance(await live.resolve("example.com"), Delegate)
    overridden = _resolver(
        memory_store,
        fetcher,
        clock,
        overrides={"Example.COM": [Link(Relation.GOOGLE, GOOGLE_IDP_ORIGIN)]},
    )
    result = await overridden.resolve("EXAMPLE.com")
    assert result.relation is Relation.GOOGLE


async def test_live_lookup_delegates_and_caches(memory_store, clock, fetcher_factory):
    fetcher = fetcher_factory(
        result=fetcher_factory.webfinger(Relation.PORTIER.value, "https://idp.example/")
    )
    resolver = _resolver(memory_store, fetcher, clock)
    first = await resolver.resolve("example.com", "user@example.com")
    second = await resolver.resolve("example.com", "user@example.com")
    assert first == second == Delegate(relation=Relation.PORTIER, href="https://idp.example")
    assert fetcher.calls == [webfinger_url("example.com", "user@example.com")]


async def test_failed_lookup_fails_open(memory_store, clock, failing_fetcher):
    resolver = _resolver(memory_store, failing_fetcher, clock)
    assert isinstance(await resolver.resolve("example.com"), SelfHandle)


async def test_unexpected_fetch_error_fails_open(memory_store, clock, fetcher_factory):
    resolver = _resolver(memory_store, fetcher_factory(error=RuntimeError("boom")), clock)
    assert isinstance(await resolver.resolve("example.com"), SelfHandle)


@pytest.mark.parametrize(
    "result",
    [
        FetchResult(status=404, body=b""),
        FetchResult(status=200, body=b"not json"),
        FetchResult(status=200, body=b'{"links": [{"rel": "http://unknown", "href": "https://x"}]}'),
        FetchResult(status=200, body=b"[]"),
    ],
)
async def test_unusable_documents_self_handle_and_cache(memory_store, clock, fetcher_factory, result):
    fetcher = fetcher_factory(result=result)
    resolver = _resolver(memory_store, fetcher, clock)
    assert isinstance(await resolver.resolve("example.com"), SelfHandle)
    assert isinstance(await resolver.resolve("example.com"), SelfHandle)
    assert len(fetcher.calls) == 1


async def test_short_max_age_is_raised_to_floor(memory_store, clock, fetcher_factory):
    fetcher = fetcher_factory(
        result=fetcher_factory.webfinger(Relation.PORTIER.value, "https://idp.example", max_age=60)
    )
    resolver = _resolver(memory_store, fetcher, clock, cache_ttl=3600)
    await resolver.resolve("example.com")
    clock.advance(3599)
    await resolver.resolve("example.com")
    assert len(fetcher.calls) == 1
    clock.advance(2)
    await resolver.resolve("example.com")
    assert len(fetcher.calls) == 2


async def test_long_max_age_is_honoured(memory_store, clock, fetcher_factory):
    fetcher = fetcher_factory(
        result=fetcher_factory.webfinger(Relation.PORTIER.value, "https://idp.example", max_age=7200)
    )
    resolver = _resolver(memory_store, fetcher, clock, cache_ttl=3600)
    await resolver.resolve("example.com")
    clock.advance(7000)
    await resolver.resolve("example.com")
    assert len(fetcher.calls) == 1


async def test_corrupt_cache_entry_triggers_lookup(memory_store, clock, fetcher_factory):
    await memory_store.put(discovery_key("example.com"), "{broken", 3600)
    fetcher = fetcher_factory(
        result=fetcher_factory.webfinger(Relation.GOOGLE.value, GOOGLE_IDP_ORIGIN)
    )
    result = await _resolver(memory_store, fetcher, clock).resolve("example.com")
    assert result.relation is Relation.GOOGLE


def test_parse_webfinger_picks_first_supported_link():
    body = (
        b'{"links": [{"rel": "http://webfinger.net/rel/avatar", "href": "https://a"},'
        b' {"rel": "https://portier.io/specs/auth/1.0/idp/google",'
        b' "href": "https://accounts.google.com"}]}'
    )
    assert parse_webfinger(body) == Link(Relation.GOOGLE, GOOGLE_IDP_ORIGIN)
    assert parse_webfinger(b'{"subject": "acct:x@y"}') is None
    with pytest.raises(DiscoveryFailure):
        parse_webfinger(b"<html>")


def test_link_parse_validation():
    with pytest.raises(ParseLinkError):
        Link.parse("https://example.com/rel", "https://idp.example")
    with pytest.raises(ParseLinkError):
        Link.parse(Relation.PORTIER.value, "ftp://idp.example")
    assert Link.parse(Relation.PORTIER.value, "https://idp.example/").href == "https://idp.example"


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, None),
        ("no-store", None),
        ("public, max-age=600", 600),
        ("max-age=0, no-cache", None),
        ("private", None),
    ],
)
def test_parse_max_age(header, expected):
    assert parse_max_age(header) == expected


def test_webfinger_url_uses_acct_resource():
    assert webfinger_url("example.com", "user@example.com") == (
        "https://example.com/.well-known/webfinger?resource=acct%3Auser%40example.com"
    )
    assert webfinger_url("example.com").endswith("resource=acct%3A%40example.com")


async def test_httpx_fetcher_reports_status_body_and_max_age():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/.well-known/webfinger"
        return httpx.Response(
            200,
            json={"links": []},
            headers={"Cache-Control": "max-age=120"},
        )

    fetcher = HttpxFetcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await fetcher.fetch(webfinger_url("example.com"))
    await fetcher.aclose()
    assert result.status == 200
    assert result.max_age == 120
    assert parse_webfinger(result.body) is None


async def test_httpx_fetcher_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    fetcher = HttpxFetcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(DiscoveryFailure):
        await fetcher.fetch(webfinger_url("example.com"))
    await fetcher.aclose()


async def test_httpx_fetcher_rejects_oversized_documents():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"x" * 2048)

    fetcher = HttpxFetcher(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)), max_body_bytes=1024
    )
    with pytest.raises(DiscoveryFailure):
        await fetcher.fetch(webfinger_url("example.com"))
    await fetcher.aclose()
