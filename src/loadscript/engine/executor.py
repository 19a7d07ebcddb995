"""HTTP executor: issues scenario requests with timing and metric emission."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import aiohttp

from loadscript._internal.errors import NetworkError
from loadscript._internal.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from loadscript.dsl.steps import Request
    from loadscript.engine.pacing import TokenBucketRateLimiter

logger = get_logger("engine.executor")


def _noop_callback(metric: RequestMetric) -> None:
    """Default no-op metric callback."""


@dataclass
class RequestMetric:
    """Raw metric emitted for every issued request.

    Attributes:
        timestamp: Monotonic timestamp when the request started.
        name: Logical name for metric grouping.
        group: Group path the request ran under (``""`` at top level).
        method: HTTP method.
        url: Full request URL.
        status_code: HTTP response status code (0 if the request failed).
        latency_ms: Response time in milliseconds, body read included.
        content_length: Response body size in bytes.
        error: ``"<ExceptionType>: <message>"`` for transport failures.
        worker_id: ID of the worker process that made the request.
    """

    timestamp: float
    name: str
    method: str
    url: str
    status_code: int
    latency_ms: float
    content_length: int
    group: str = ""
    error: str | None = None
    worker_id: int = 0

    @property
    def is_network_error(self) -> bool:
        """Return True when the request never produced a response."""
        return self.error is not None


@dataclass(frozen=True)
class Response:
    """A fully-read HTTP response.

    Attributes:
        method: HTTP method of the request.
        url: Final URL (after redirects).
        status: HTTP status code.
        headers: Case-insensitive, read-only response headers.
        body: Raw response body.
        elapsed_ms: Time from sending the request to reading the body.
    """

    method: str
    url: str
    status: int
    headers: Mapping[str, str]
    body: bytes
    elapsed_ms: float

    def text(self, encoding: str = "utf-8") -> str:
        """Decode the body, replacing undecodable bytes."""
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        """Parse the body as JSON.

        Raises:
            ValueError: If the body is not valid JSON.
        """
        return json.loads(self.body)


def _merge_headers(base: Mapping[str, str], override: Mapping[str, str]) -> dict[str, str]:
    """Overlay ``override`` on ``base``, matching header names case-insensitively."""
    merged = dict(base)
    for key, value in override.items():
        for existing in [k for k in merged if k.lower() == key.lower()]:
            del merged[existing]
        merged[key] = value
    return merged


def _describe(exc: BaseException) -> str:
    detail = str(exc)
    if not detail and isinstance(exc, TimeoutError):
        detail = "request timed out"
    return f"{type(exc).__name__}: {detail}"


class HttpExecutor:
    """Issues requests over one ``aiohttp.ClientSession``.

    One executor belongs to one virtual user, so each user has its own
    connection pool and cookie jar. Every request, successful or not, is
    timed and reported through ``metric_callback``.

    Attributes:
        base_url: Base URL relative request URLs are resolved against.
        headers: Headers applied to every request, below per-request ones.
    """

    def __init__(
        self,
        base_url: str = "",
        headers: Mapping[str, str] | None = None,
        metric_callback: Callable[[RequestMetric], None] | None = None,
        worker_id: int = 0,
        timeout: float = 60.0,
        pool_size: int = 100,
        user_agent: str | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            base_url: Base URL for relative request URLs.
            headers: Default headers applied to every request.
            metric_callback: Called with a ``RequestMetric`` after each
                request. Defaults to a no-op.
            worker_id: Worker process identifier for metric tagging.
            timeout: Default total request timeout in seconds.
            pool_size: Maximum open connections.
            user_agent: ``User-Agent`` sent unless a request sets its own.
            rate_limiter: Optional limiter each request acquires first.
        """
        self.base_url = base_url.rstrip("/")
        self.headers: dict[str, str] = dict(headers or {})
        if user_agent and not any(key.lower() == "user-agent" for key in self.headers):
            self.headers["User-Agent"] = user_agent
        self._metric_callback = metric_callback or _noop_callback
        self._worker_id = worker_id
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._pool_size = pool_size
        self._rate_limiter = rate_limiter
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> HttpExecutor:
        """Open the underlying aiohttp session."""
        # unsafe=True keeps cookies set by IP-address hosts (127.0.0.1 targets)
        self._session = aiohttp.ClientSession(
            timeout=self._timeout,
            connector=aiohttp.TCPConnector(limit=self._pool_size),
            cookie_jar=aiohttp.CookieJar(unsafe=True),
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        """Close the underlying aiohttp session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    def resolve_url(self, url: str) -> str:
        """Return ``url`` made absolute against ``base_url``."""
        if not self.base_url or "://" in url:
            return url
        return urljoin(f"{self.base_url}/", url.lstrip("/"))

    async def execute(self, request: Request, *, group: str = "") -> Response:
        """Send ``request`` and read the whole response.

        Args:
            request: The request to issue.
            group: Group path recorded on the emitted metric.

        Returns:
            The response, whatever its status code.

        Raises:
            NetworkError: On connection errors, DNS failures and timeouts.
            RuntimeError: If the executor is used outside ``async with``.
        """
        if self._session is None:
            msg = "HttpExecutor must be used as an async context manager"
            raise RuntimeError(msg)

        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()

        method = request.method.value
        url = self.resolve_url(request.url)
        headers = _merge_headers(self.headers, request.headers)
        kwargs: dict[str, Any] = {}
        if request.cookies:
            kwargs["cookies"] = request.cookies
        if request.timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=request.timeout)

        start = time.monotonic()
        status_code = 0
        body = b""
        error: str | None = None

        try:
            async with self._session.request(
                method,
                url,
                data=request.body,
                headers=headers,
                **kwargs,
            ) as resp:
                body = await resp.read()
                status_code = resp.status
                resp_headers = resp.headers
                final_url = str(resp.url)
        except (aiohttp.ClientError, TimeoutError, OSError) as exc:
            error = _describe(exc)
            logger.debug("%s %s failed: %s", method, url, error)
            raise NetworkError(error, method=method, url=url) from exc
        except Exception as exc:
            error = _describe(exc)
            raise
        finally:
            latency_ms = (time.monotonic() - start) * 1000
            # Cancelled mid-flight: neither a response nor a failure to report
            if status_code or error is not None:
                self._emit(
                    RequestMetric(
                        timestamp=start,
                        name=request.metric_name,
                        group=group,
                        method=method,
                        url=url,
                        status_code=status_code,
                        latency_ms=latency_ms,
                        content_length=len(body),
                        error=error,
                        worker_id=self._worker_id,
                    )
                )

        return Response(
            method=method,
            url=final_url,
            status=status_code,
            headers=resp_headers,
            body=body,
            elapsed_ms=latency_ms,
        )

    def _emit(self, metric: RequestMetric) -> None:
        try:
            self._metric_callback(metric)
        except Exception:
            logger.warning("Metric callback failed for %s", metric.url, exc_info=True)
