import asyncio

import pytest
from aiohttp import ClientConnectionError

from errors import (
    FeedParseError,
    FetchTimeoutError,
    HttpStatusError,
    NetworkError,
    ProxyNotConfiguredError,
    WrongContentError,
)
from fakes import FakeResponse, FakeSession, json_response, relay_target
from fetcher import FeedFetcher, ProxyFetchClient, looks_like_html

RELAY = "http://relay.local"
PAYLOAD = {"title": "Example", "link": "https://example.com/", "items": [{"title": "A"}]}


def make_fetcher(max_retries=2):
    return FeedFetcher(client=ProxyFetchClient(proxy_base=RELAY, timeout=5), max_retries=max_retries, backoff_base=0)


def test_proxy_url_encodes_target_and_refresh_flag():
    client = ProxyFetchClient(proxy_base=RELAY + "/")
    assert client.build_proxy_url("https://a.example/x?y=1") == (
        "http://relay.local/api/fetch-feed?url=https%3A%2F%2Fa.example%2Fx%3Fy%3D1"
    )
    assert client.build_proxy_url("https://a.example/", force_refresh=True).endswith("&refresh=true")


def test_missing_relay_is_a_configuration_error():
    with pytest.raises(ProxyNotConfiguredError):
        ProxyFetchClient(proxy_base="").build_proxy_url("https://example.com/feed")


@pytest.mark.asyncio
async def test_fetch_without_relay_fails_immediately():
    session = FakeSession()
    fetcher = FeedFetcher(client=ProxyFetchClient(proxy_base=""), max_retries=2, backoff_base=0)

    with pytest.raises(ProxyNotConfiguredError):
        await fetcher.fetch("https://example.com/feed", session)
    assert session.calls == []


@pytest.mark.asyncio
async def test_successful_fetch_returns_payload_and_sends_cache_header():
    session = FakeSession(lambda url: json_response(PAYLOAD))
    data = await make_fetcher().fetch("https://example.com/feed", session)

    assert data == PAYLOAD
    assert session.targets() == ["https://example.com/feed"]
    assert session.request_headers[0]["Cache-Control"] == "max-age=3600"


@pytest.mark.asyncio
async def test_force_refresh_bypasses_relay_cache():
    session = FakeSession(lambda url: json_response(PAYLOAD))
    await make_fetcher().fetch("https://example.com/feed", session, force_refresh=True)

    assert "refresh=true" in session.calls[0]
    assert session.request_headers[0]["Cache-Control"] == "no-cache"


@pytest.mark.asyncio
async def test_server_errors_retry_then_move_to_next_candidate():
    def handler(url):
        if relay_target(url) == "https://example.com/feed/":
            return FakeResponse(status=500, body="oops", content_type="text/plain")
        return json_response(PAYLOAD)

    session = FakeSession(handler)
    data = await make_fetcher(max_retries=2).fetch("https://example.com/feed/", session)

    assert data == PAYLOAD
    assert session.targets() == [
        "https://example.com/feed/",
        "https://example.com/feed/",
        "https://example.com/feed/",
        "https://example.com/feed",
    ]


@pytest.mark.asyncio
async def test_html_response_abandons_candidate_without_retry():
    session = FakeSession(lambda url: FakeResponse(body="<!DOCTYPE html><html></html>", content_type="text/html"))

    with pytest.raises(WrongContentError):
        await make_fetcher(max_retries=2).fetch("https://example.com/rss", session)

    # One attempt per candidate: https and the flipped http form
    assert session.targets() == ["https://example.com/rss", "http://example.com/rss"]


@pytest.mark.asyncio
async def test_html_body_detected_without_content_type():
    session = FakeSession(lambda url: FakeResponse(body="  <html><body>login</body></html>", content_type="application/json"))

    with pytest.raises(WrongContentError):
        await make_fetcher(max_retries=0).fetch("https://example.com/rss", session)


@pytest.mark.asyncio
async def test_invalid_json_is_not_retried():
    session = FakeSession(lambda url: FakeResponse(body="{not json"))

    with pytest.raises(FeedParseError):
        await make_fetcher(max_retries=3).fetch("https://example.com/rss", session)
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_timeouts_are_retried_and_reported():
    session = FakeSession(lambda url: asyncio.TimeoutError())

    with pytest.raises(FetchTimeoutError) as excinfo:
        await make_fetcher(max_retries=1).fetch("https://example.com/rss", session)

    assert excinfo.value.retryable
    assert len(session.calls) == 4


@pytest.mark.asyncio
async def test_connection_errors_become_network_errors():
    session = FakeSession(lambda url: ClientConnectionError("connection refused"))

    with pytest.raises(NetworkError) as excinfo:
        await make_fetcher(max_retries=0).fetch("https://example.com/rss", session)
    assert "ClientConnectionError" in str(excinfo.value)


@pytest.mark.asyncio
async def test_last_error_is_raised_after_all_candidates_fail():
    session = FakeSession(lambda url: FakeResponse(status=503, content_type="text/plain"))

    with pytest.raises(HttpStatusError) as excinfo:
        await make_fetcher(max_retries=0).fetch("https://example.com/rss", session)
    assert excinfo.value.status == 503
    assert excinfo.value.url == "http://example.com/rss"


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_request():
    gate = asyncio.Event()

    async def handler(url):
        await gate.wait()
        return json_response(PAYLOAD)

    session = FakeSession(handler)
    fetcher = make_fetcher()

    first = asyncio.create_task(fetcher.fetch("https://example.com/feed", session))
    second = asyncio.create_task(fetcher.fetch("  HTTPS://EXAMPLE.com/feed", session))
    await asyncio.sleep(0)
    assert fetcher.in_flight_count() == 1

    gate.set()
    results = await asyncio.gather(first, second)

    assert results == [PAYLOAD, PAYLOAD]
    assert len(session.calls) == 1
    assert fetcher.in_flight_count() == 0


@pytest.mark.asyncio
async def test_shared_failure_reaches_every_waiter():
    gate = asyncio.Event()

    async def handler(url):
        await gate.wait()
        return FakeResponse(body="nope")

    session = FakeSession(handler)
    fetcher = make_fetcher(max_retries=0)

    tasks = [asyncio.create_task(fetcher.fetch("https://example.com/feed", session)) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(result, FeedParseError) for result in results)
    assert fetcher.in_flight_count() == 0


@pytest.mark.asyncio
async def test_cancelling_a_waiter_does_not_cancel_the_shared_request():
    gate = asyncio.Event()

    async def handler(url):
        await gate.wait()
        return json_response(PAYLOAD)

    session = FakeSession(handler)
    fetcher = make_fetcher()

    first = asyncio.create_task(fetcher.fetch("https://example.com/feed", session))
    second = asyncio.create_task(fetcher.fetch("https://example.com/feed", session))
    await asyncio.sleep(0)
    first.cancel()
    gate.set()

    assert await second == PAYLOAD
    with pytest.raises(asyncio.CancelledError):
        await first


@pytest.mark.asyncio
async def test_undecodable_body_moves_to_next_candidate():
    def handler(url):
        if relay_target(url) == "https://example.com/feed/":
            return FakeResponse(raw=b'{"title": "\xff\xfe"}')
        return json_response(PAYLOAD)

    session = FakeSession(handler)
    data = await make_fetcher(max_retries=2).fetch("https://example.com/feed/", session)

    assert data == PAYLOAD
    assert session.targets() == ["https://example.com/feed/", "https://example.com/feed"]


@pytest.mark.asyncio
async def test_undecodable_body_is_a_parse_error():
    session = FakeSession(lambda url: FakeResponse(raw=b"\xff\xfe\xfa"))

    with pytest.raises(FeedParseError) as excinfo:
        await make_fetcher(max_retries=0).fetch("https://example.com/rss", session)
    assert not excinfo.value.retryable
    assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)


def test_html_detection_skips_byte_order_mark():
    assert looks_like_html("\ufeff\n<!DOCTYPE html><html></html>", "application/json")
    assert not looks_like_html('\ufeff{"items": []}', "application/json")
