"""
Guarded HTTP GET with per-hop SSRF re-validation.

Redirects are followed by hand so that every target goes back through the
network policy before it is requested. Bodies are streamed up to a byte cap.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from contextlib import suppress
from dataclasses import dataclass
from typing import TypeVar

import httpx

from toolguard._types import ErrorCode, FetchOutcome, RedirectHop
from toolguard.config import FETCH_MAX_BYTES, FETCH_MAX_REDIRECTS, FetchSettings
from toolguard.errors import FetchError, PolicyViolation
from toolguard.inputs import FetchRequest
from toolguard.networking import NetworkPolicy, ResolvedURL

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class _Exchange:
    """What one GET produced: either a redirect target or a terminal response."""

    status: int
    status_text: str
    headers: dict[str, str]
    location: str | None = None
    body: str = ""
    truncated: bool = False
    bytes_read: int = 0

    @property
    def is_redirect(self) -> bool:
        return self.status in REDIRECT_STATUSES


class GuardedFetcher:
    """
    Performs policy-checked GET requests.

    Args:
        settings: Transport settings (user agent, DNS pinning).
        policy: Network policy; defaults to one built from ``settings``.
        client: Optional httpx client to reuse. It must not follow redirects.
            When omitted a client is created per call.

    Example:
        >>> fetcher = GuardedFetcher()
        >>> outcome = await fetcher.fetch(parse_fetch_request({"url": "https://example.com"}))
        >>> print(outcome.status)
    """

    def __init__(
        self,
        settings: FetchSettings | None = None,
        *,
        policy: NetworkPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or FetchSettings()
        self._policy = policy or NetworkPolicy(
            blocked_hostnames=self._settings.blocked_hostnames,
            blocked_suffixes=self._settings.blocked_suffixes,
        )
        self._client = client

    @property
    def policy(self) -> NetworkPolicy:
        return self._policy

    async def fetch(self, request: FetchRequest, *, cancel: asyncio.Event | None = None) -> FetchOutcome:
        """
        GET ``request.url``, following at most ``max_redirects`` redirects.

        Raises:
            PolicyViolation: INVALID_URL or SSRF_BLOCKED, for the first URL or any redirect.
            FetchError: DNS_FAILED, FETCH_FAILED, TOO_MANY_REDIRECTS or ABORTED.
        """
        if self._client is not None:
            return await self._fetch(self._client, request, cancel)
        async with httpx.AsyncClient(follow_redirects=False, trust_env=False) as client:
            return await self._fetch(client, request, cancel)

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        request: FetchRequest,
        cancel: asyncio.Event | None,
    ) -> FetchOutcome:
        max_redirects = FETCH_MAX_REDIRECTS.clamp(request.max_redirects)
        max_bytes = FETCH_MAX_BYTES.clamp(request.max_bytes)
        redirects: list[RedirectHop] = []
        current: str | httpx.URL = request.url

        for _ in range(max_redirects + 1):
            # Every hop is re-validated; a redirect target is attacker-controlled
            target, exchange = await self._bounded(
                self._hop(client, current, max_bytes, request.timeout_seconds),
                timeout=request.timeout_seconds,
                cancel=cancel,
                url=str(current),
            )

            if not exchange.is_redirect:
                return FetchOutcome(
                    url=str(target),
                    status=exchange.status,
                    status_text=exchange.status_text,
                    ok=200 <= exchange.status < 300,
                    headers=exchange.headers,
                    body=exchange.body,
                    truncated=exchange.truncated,
                    bytes_read=exchange.bytes_read,
                    redirects=tuple(redirects),
                )

            if not exchange.location:
                raise FetchError(
                    ErrorCode.FETCH_FAILED,
                    "Redirect response missing Location header",
                    {"status": exchange.status},
                )
            try:
                next_url = target.url.join(exchange.location)
            except httpx.InvalidURL as exc:
                raise PolicyViolation(
                    ErrorCode.INVALID_URL,
                    "Invalid redirect location",
                    {"location": exchange.location},
                ) from exc
            redirects.append(RedirectHop(status=exchange.status, location=str(next_url)))
            logger.debug(f"Redirect {exchange.status} {target} -> {next_url}")
            current = next_url

        raise FetchError(
            ErrorCode.TOO_MANY_REDIRECTS,
            "Too many redirects",
            {"maxRedirects": max_redirects, "redirects": redirects},
        )

    async def _hop(
        self,
        client: httpx.AsyncClient,
        url: str | httpx.URL,
        max_bytes: int,
        timeout: float,
    ) -> tuple[ResolvedURL, _Exchange]:
        """Validate and resolve one URL, then request it."""
        target = await self._policy.check_url(url)
        return target, await self._exchange(client, target, max_bytes, timeout)

    async def _exchange(
        self,
        client: httpx.AsyncClient,
        target: ResolvedURL,
        max_bytes: int,
        timeout: float,
    ) -> _Exchange:
        headers = {"user-agent": self._settings.user_agent, "accept": "*/*"}
        extensions: dict[str, str] = {}
        addresses: tuple[str | None, ...] = (None,)
        if self._settings.pin_dns and target.addresses:
            # Connect to a validated address; keep the name for Host and TLS
            addresses = target.addresses
            headers["host"] = target.url.netloc.decode("ascii")
            if target.url.scheme == "https":
                extensions["sni_hostname"] = target.url.raw_host.decode("ascii")

        for address in addresses[:-1]:
            try:
                return await self._request(client, target, address, headers, extensions, max_bytes, timeout)
            except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                logger.debug(f"Connect to {address} for {target.hostname} failed ({exc}), trying next address")
            except httpx.HTTPError as exc:
                raise _fetch_failed(exc, target) from exc
        try:
            return await self._request(client, target, addresses[-1], headers, extensions, max_bytes, timeout)
        except httpx.HTTPError as exc:
            raise _fetch_failed(exc, target) from exc

    async def _request(
        self,
        client: httpx.AsyncClient,
        target: ResolvedURL,
        address: str | None,
        headers: dict[str, str],
        extensions: dict[str, str],
        max_bytes: int,
        timeout: float,
    ) -> _Exchange:
        async with client.stream(
            "GET",
            target.connect_url(pin=address is not None, address=address),
            headers=headers,
            extensions=extensions,
            timeout=timeout,
        ) as response:
            status_text = response.reason_phrase
            folded = _fold_headers(response.headers)
            if response.status_code in REDIRECT_STATUSES:
                return _Exchange(
                    status=response.status_code,
                    status_text=status_text,
                    headers=folded,
                    location=response.headers.get("location"),
                )
            body, truncated, bytes_read = await _read_capped(response, max_bytes)

        return _Exchange(
            status=response.status_code,
            status_text=status_text,
            headers=folded,
            body=body,
            truncated=truncated,
            bytes_read=bytes_read,
        )

    async def _bounded(
        self,
        work: Awaitable[T],
        *,
        timeout: float,
        cancel: asyncio.Event | None,
        url: str,
    ) -> T:
        """Run one hop, DNS included, under the timeout, racing the caller's cancel event."""
        if cancel is not None and cancel.is_set():
            _close_awaitable(work)
            raise FetchError(ErrorCode.ABORTED, "Request aborted")

        task = asyncio.ensure_future(work)
        cancelled = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        watched = {task} if cancelled is None else {task, cancelled}
        try:
            done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancelled is not None:
                cancelled.cancel()
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        if task in done:
            return task.result()
        if cancelled is not None and cancelled in done:
            raise FetchError(ErrorCode.ABORTED, "Request aborted", {"url": url})
        raise FetchError(
            ErrorCode.FETCH_FAILED,
            f"Fetch timed out after {int(timeout * 1000)}ms",
            {"url": url},
        )


async def _read_capped(response: httpx.Response, max_bytes: int) -> tuple[str, bool, int]:
    """Read at most ``max_bytes`` of the body, keeping the prefix on truncation."""
    chunks: list[bytes] = []
    bytes_read = 0
    truncated = False
    async for chunk in response.aiter_bytes():
        remaining = max_bytes - bytes_read
        if remaining <= 0:
            truncated = True
            break
        if len(chunk) > remaining:
            chunks.append(chunk[:remaining])
            bytes_read += remaining
            truncated = True
            break
        chunks.append(chunk)
        bytes_read += len(chunk)
    return b"".join(chunks).decode("utf-8", errors="replace"), truncated, bytes_read


def _fold_headers(headers: httpx.Headers) -> dict[str, str]:
    folded: dict[str, str] = {}
    for key, value in headers.multi_items():
        folded[key.lower()] = value
    return folded


def _close_awaitable(work: Awaitable[object]) -> None:
    close = getattr(work, "close", None)
    if callable(close):
        close()


def _fetch_failed(exc: httpx.HTTPError, target: ResolvedURL) -> FetchError:
    return FetchError(
        ErrorCode.FETCH_FAILED,
        "Fetch failed",
        {"message": str(exc) or type(exc).__name__, "url": str(target)},
    )
