"""Tests for GuardedFetcher."""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Sequence

import httpx
import pytest

from toolguard import (
    ErrorCode,
    FetchError,
    FetchSettings,
    GuardedFetcher,
    NetworkPolicy,
    PolicyViolation,
    parse_fetch_request,
)

from tests.conftest import Recorder, fake_resolver


def request(url: str, **fields: object):
    return parse_fetch_request({"url": url, **fields})


async def stalled_resolver(hostname: str, port: int) -> Sequence[str]:
    await asyncio.sleep(5)
    return ["93.184.216.34"]


class TestFetchSuccess:
    """Tests for terminal responses."""

    async def test_returns_response(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A 200 response should become a FetchOutcome."""
        recorder.handler = lambda req: httpx.Response(200, text="<h1>Example Domain</h1>")
        outcome = await fetcher.fetch(request("https://public.test/"))
        assert outcome.status == 200
        assert outcome.status_text == "OK"
        assert outcome.ok
        assert outcome.body == "<h1>Example Domain</h1>"
        assert outcome.url == "https://public.test/"
        assert not outcome.truncated
        assert outcome.bytes_read == len(outcome.body)
        assert outcome.redirects == ()

    async def test_error_status_is_not_a_failure(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A 404 is a response, reported with ok false."""
        recorder.handler = lambda req: httpx.Response(404, text="missing")
        outcome = await fetcher.fetch(request("https://public.test/nope"))
        assert outcome.status == 404
        assert outcome.status_text == "Not Found"
        assert not outcome.ok
        assert outcome.body == "missing"

    async def test_folds_headers(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Header keys should be lower-cased with the last value winning."""
        recorder.handler = lambda req: httpx.Response(
            200,
            headers=[("X-Dup", "first"), ("x-dup", "second"), ("Content-Type", "text/plain")],
            text="ok",
        )
        outcome = await fetcher.fetch(request("https://public.test/"))
        assert outcome.headers["x-dup"] == "second"
        assert outcome.headers["content-type"] == "text/plain"
        assert all(key == key.lower() for key in outcome.headers)

    async def test_sends_fixed_headers(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Requests should be GETs with the identifying headers."""
        await fetcher.fetch(request("https://public.test/"))
        sent = recorder.requests[0]
        assert sent.method == "GET"
        assert sent.headers["user-agent"] == "toolguard-fetch/0.1"
        assert sent.headers["accept"] == "*/*"


class TestDnsPinning:
    """Tests for connecting to the validated address."""

    async def test_connects_to_validated_address(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """The transport should see the checked IP with the original Host header."""
        await fetcher.fetch(request("https://public.test:8443/a?b=1"))
        sent = recorder.requests[0]
        assert sent.url.host == "93.184.216.34"
        assert sent.url.port == 8443
        assert sent.url.raw_path == b"/a?b=1"
        assert sent.headers["host"] == "public.test:8443"
        assert sent.extensions["sni_hostname"] == "public.test"

    async def test_plain_http_has_no_sni(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """SNI only applies to https."""
        await fetcher.fetch(request("http://public.test/"))
        sent = recorder.requests[0]
        assert sent.headers["host"] == "public.test"
        assert "sni_hostname" not in sent.extensions

    async def test_pinning_can_be_disabled(self, recorder: Recorder) -> None:
        """With pinning off the transport gets the hostname."""
        async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
            fetcher = GuardedFetcher(
                FetchSettings(pin_dns=False),
                policy=NetworkPolicy(resolver=fake_resolver),
                client=client,
            )
            await fetcher.fetch(request("https://public.test/"))
        assert recorder.requests[0].url.host == "public.test"

    async def test_falls_back_to_next_validated_address(
        self, fetcher: GuardedFetcher, recorder: Recorder
    ) -> None:
        """An unreachable first address should not fail the fetch while others remain."""

        def handler(req: httpx.Request) -> httpx.Response:
            if req.url.host == "93.184.216.40":
                raise httpx.ConnectError("connection refused", request=req)
            return httpx.Response(200, text="second")

        recorder.handler = handler
        outcome = await fetcher.fetch(request("https://multi.test/"))
        assert outcome.body == "second"
        assert [sent.url.host for sent in recorder.requests] == ["93.184.216.40", "93.184.216.41"]
        assert all(sent.headers["host"] == "multi.test" for sent in recorder.requests)

    async def test_all_addresses_unreachable(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """The last connect failure should be FETCH_FAILED."""

        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError(f"refused by {req.url.host}", request=req)

        recorder.handler = handler
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://multi.test/"))
        assert exc_info.value.code is ErrorCode.FETCH_FAILED
        assert exc_info.value.details["message"] == "refused by 93.184.216.41"
        assert len(recorder.requests) == 2

    async def test_http_error_does_not_retry(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Only connect failures move on to the next address."""

        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ReadError("reset", request=req)

        recorder.handler = handler
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://multi.test/"))
        assert exc_info.value.code is ErrorCode.FETCH_FAILED
        assert len(recorder.requests) == 1


class TestFetchPolicy:
    """Tests for SSRF enforcement."""

    async def test_blocks_loopback_without_request(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """http://127.0.0.1 should be blocked before any network call."""
        with pytest.raises(PolicyViolation) as exc_info:
            await fetcher.fetch(request("http://127.0.0.1"))
        assert exc_info.value.code is ErrorCode.SSRF_BLOCKED
        assert recorder.requests == []

    async def test_blocks_private_resolution_without_request(
        self, fetcher: GuardedFetcher, recorder: Recorder
    ) -> None:
        """A hostname resolving privately should never be requested."""
        with pytest.raises(PolicyViolation):
            await fetcher.fetch(request("http://decoy.test/"))
        assert recorder.requests == []

    async def test_dns_failure(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Unresolvable hosts should be DNS_FAILED."""
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("http://nowhere.test/"))
        assert exc_info.value.code is ErrorCode.DNS_FAILED
        assert recorder.requests == []

    async def test_rejects_non_http(self, fetcher: GuardedFetcher) -> None:
        """Other schemes should be INVALID_URL."""
        with pytest.raises(PolicyViolation) as exc_info:
            await fetcher.fetch(request("file:///etc/passwd"))
        assert exc_info.value.code is ErrorCode.INVALID_URL


class TestRedirects:
    """Tests for manual, re-validated redirects."""

    async def test_follows_relative_redirect(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A relative Location should resolve against the current URL and be recorded."""

        def handler(req: httpx.Request) -> httpx.Response:
            if req.url.path == "/start":
                return httpx.Response(301, headers={"location": "/final"})
            return httpx.Response(200, text="done")

        recorder.handler = handler
        outcome = await fetcher.fetch(request("https://public.test/start"))
        assert outcome.body == "done"
        assert outcome.url == "https://public.test/final"
        assert [hop.to_payload() for hop in outcome.redirects] == [
            {"status": 301, "location": "https://public.test/final"}
        ]

    async def test_follows_cross_host_redirect(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Each hop should be pinned to its own validated address."""

        def handler(req: httpx.Request) -> httpx.Response:
            if req.headers["host"] == "public.test":
                return httpx.Response(302, headers={"location": "https://mirror.test/copy"})
            return httpx.Response(200, text="mirror")

        recorder.handler = handler
        outcome = await fetcher.fetch(request("https://public.test/"))
        assert outcome.body == "mirror"
        assert [req.url.host for req in recorder.requests] == ["93.184.216.34", "93.184.216.35"]

    async def test_revalidates_every_hop(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A public page redirecting to a private host should be blocked."""
        recorder.handler = lambda req: httpx.Response(302, headers={"location": "http://internal.test/admin"})
        with pytest.raises(PolicyViolation) as exc_info:
            await fetcher.fetch(request("https://public.test/"))
        assert exc_info.value.code is ErrorCode.SSRF_BLOCKED
        assert exc_info.value.details == {"hostname": "internal.test", "address": "10.0.0.5"}
        assert len(recorder.requests) == 1

    @pytest.mark.parametrize(
        "location",
        ["http://169.254.169.254/latest/meta-data/", "http://localhost:8080/", "http://[::1]/"],
    )
    async def test_blocks_redirect_to_private_literal(
        self, fetcher: GuardedFetcher, recorder: Recorder, location: str
    ) -> None:
        """Redirects to private literals and reserved names should be blocked."""
        recorder.handler = lambda req: httpx.Response(307, headers={"location": location})
        with pytest.raises(PolicyViolation) as exc_info:
            await fetcher.fetch(request("https://public.test/"))
        assert exc_info.value.code is ErrorCode.SSRF_BLOCKED
        assert len(recorder.requests) == 1

    async def test_blocks_redirect_to_other_scheme(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A redirect to file:// should be INVALID_URL."""
        recorder.handler = lambda req: httpx.Response(302, headers={"location": "file:///etc/passwd"})
        with pytest.raises(PolicyViolation) as exc_info:
            await fetcher.fetch(request("https://public.test/"))
        assert exc_info.value.code is ErrorCode.INVALID_URL

    async def test_too_many_redirects(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Exceeding maxRedirects should carry the full history."""

        def handler(req: httpx.Request) -> httpx.Response:
            step = int(req.url.params.get("n", "0"))
            return httpx.Response(302, headers={"location": f"/loop?n={step + 1}"})

        recorder.handler = handler
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://public.test/loop", maxRedirects=2))
        error = exc_info.value
        assert error.code is ErrorCode.TOO_MANY_REDIRECTS
        assert len(recorder.requests) == 3
        payload = error.to_payload()["details"]
        assert payload["maxRedirects"] == 2
        assert [hop["location"] for hop in payload["redirects"]] == [
            "https://public.test/loop?n=1",
            "https://public.test/loop?n=2",
            "https://public.test/loop?n=3",
        ]

    async def test_zero_redirects_allowed(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """With maxRedirects 0 the first redirect is already too many."""
        recorder.handler = lambda req: httpx.Response(308, headers={"location": "/next"})
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://public.test/", maxRedirects=0))
        assert exc_info.value.code is ErrorCode.TOO_MANY_REDIRECTS
        assert len(recorder.requests) == 1

    async def test_redirect_without_location(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A redirect status without Location should be FETCH_FAILED."""
        recorder.handler = lambda req: httpx.Response(302)
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://public.test/"))
        assert exc_info.value.code is ErrorCode.FETCH_FAILED

    async def test_non_redirect_3xx_is_terminal(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """304 is not a redirect and should be returned as is."""
        recorder.handler = lambda req: httpx.Response(304, headers={"location": "/ignored"})
        outcome = await fetcher.fetch(request("https://public.test/"))
        assert outcome.status == 304
        assert len(recorder.requests) == 1


class TestBodyCap:
    """Tests for the streamed byte ceiling."""

    async def test_truncates_to_exact_cap(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """The body should be cut at maxBytes and the prefix preserved."""
        body = bytes(range(48, 58)) * 300
        recorder.handler = lambda req: httpx.Response(200, content=body)
        outcome = await fetcher.fetch(request("https://public.test/", maxBytes=1024))
        assert outcome.truncated
        assert outcome.bytes_read == 1024
        assert outcome.body.encode() == body[:1024]
        for n in (1, 17, 512, 1024):
            assert outcome.body.encode()[:n] == body[:n]

    async def test_body_at_cap_is_not_truncated(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A body of exactly maxBytes is complete."""
        recorder.handler = lambda req: httpx.Response(200, content=b"a" * 1024)
        outcome = await fetcher.fetch(request("https://public.test/", maxBytes=1024))
        assert not outcome.truncated
        assert outcome.bytes_read == 1024

    async def test_streamed_body_truncates(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A chunked body should stop being read once the cap is reached."""
        pulled: list[int] = []

        async def chunks():
            for index in range(100):
                pulled.append(index)
                yield b"z" * 512

        recorder.handler = lambda req: httpx.Response(200, content=chunks())
        outcome = await fetcher.fetch(request("https://public.test/", maxBytes=2000))
        assert outcome.body == "z" * 2000
        assert outcome.truncated
        assert len(pulled) < 100

    async def test_invalid_utf8_is_replaced(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Undecodable bytes should not fail the fetch."""
        recorder.handler = lambda req: httpx.Response(200, content=b"ok\xff")
        outcome = await fetcher.fetch(request("https://public.test/"))
        assert outcome.body == "ok\ufffd"


class TestFetchFailures:
    """Tests for transport failures, timeouts and cancellation."""

    async def test_transport_error(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Connection errors should be FETCH_FAILED."""

        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=req)

        recorder.handler = handler
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://public.test/"))
        assert exc_info.value.code is ErrorCode.FETCH_FAILED
        assert "connection refused" in exc_info.value.details["message"]

    async def test_timeout(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A hop slower than timeoutMs should be FETCH_FAILED."""

        async def slow(req: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        recorder.handler = slow
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://public.test/", timeoutMs=100))
        assert exc_info.value.code is ErrorCode.FETCH_FAILED
        assert exc_info.value.message == "Fetch timed out after 100ms"

    async def test_cancel_aborts(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """Setting the cancel event mid-request should be ABORTED."""

        async def slow(req: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        recorder.handler = slow
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, cancel.set)
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://public.test/"), cancel=cancel)
        assert exc_info.value.code is ErrorCode.ABORTED

    async def test_cancel_before_request(self, fetcher: GuardedFetcher, recorder: Recorder) -> None:
        """A cancel event already set should abort without a request."""
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(request("https://public.test/"), cancel=cancel)
        assert exc_info.value.code is ErrorCode.ABORTED
        assert recorder.requests == []

    async def test_timeout_covers_dns(self, recorder: Recorder) -> None:
        """A stalled resolver should hit the hop deadline."""
        async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
            fetcher = GuardedFetcher(policy=NetworkPolicy(resolver=stalled_resolver), client=client)
            started = time.monotonic()
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(request("https://public.test/", timeoutMs=100))
        assert time.monotonic() - started < 2
        assert exc_info.value.code is ErrorCode.FETCH_FAILED
        assert exc_info.value.message == "Fetch timed out after 100ms"
        assert recorder.requests == []

    async def test_cancel_during_dns(self, recorder: Recorder) -> None:
        """Setting the cancel event while resolving should be ABORTED promptly."""
        async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
            fetcher = GuardedFetcher(policy=NetworkPolicy(resolver=stalled_resolver), client=client)
            cancel = asyncio.Event()
            asyncio.get_running_loop().call_later(0.1, cancel.set)
            started = time.monotonic()
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(request("https://public.test/"), cancel=cancel)
        assert time.monotonic() - started < 2
        assert exc_info.value.code is ErrorCode.ABORTED
        assert recorder.requests == []


@pytest.mark.network
@pytest.mark.skipif(
    os.environ.get("TOOLGUARD_NETWORK_TESTS") != "1",
    reason="set TOOLGUARD_NETWORK_TESTS=1 to run live network tests",
)
class TestLiveFetch:
    """Tests against the real internet."""

    async def test_example_com(self) -> None:
        """https://example.com should return the example page."""
        outcome = await GuardedFetcher().fetch(request("https://example.com"))
        assert outcome.status == 200
        assert "Example Domain" in outcome.body
