"""reqchain executor - HTTP request execution over requests."""

import asyncio
import logging
import ssl
import time
from collections.abc import Callable
from typing import Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.ssl_ import create_urllib3_context

from reqchain.errors import TransportError
from reqchain.models import HandlerConfig, RequestDescriptor, ResponseDescriptor, merge_headers

logger = logging.getLogger(__name__)

# --ssl values, dots removed. Each pins both ends of the handshake range.
TLS_VERSIONS = {
    "ssl3": ssl.TLSVersion.SSLv3,
    "tls": ssl.TLSVersion.TLSv1,
    "tls11": ssl.TLSVersion.TLSv1_1,
    "tls12": ssl.TLSVersion.TLSv1_2,
    "tls13": ssl.TLSVersion.TLSv1_3,
}


class Transport(Protocol):
    """Anything that can send a RequestDescriptor and return its response."""

    async def execute(self, request: RequestDescriptor) -> ResponseDescriptor: ...

    def close(self) -> None: ...


TransportFactory = Callable[[HandlerConfig], Transport]


def _http_version(raw_version: int | None) -> str:
    if raw_version == 10:
        return "1.0"
    if raw_version == 20:
        return "2"
    return "1.1"


def build_ssl_context(ssl_version: str) -> ssl.SSLContext | None:
    """SSL context restricted to one protocol version, or None if the name is unknown."""
    version = TLS_VERSIONS.get(ssl_version.lower().replace(".", ""))
    if version is None:
        logger.warning("Ignoring unknown SSL protocol %r", ssl_version)
        return None
    try:
        return create_urllib3_context(ssl_minimum_version=version, ssl_maximum_version=version)
    except (ValueError, ssl.SSLError) as e:
        raise TransportError(f"Unsupported SSL protocol {ssl_version}: {e}") from e


class TlsAdapter(HTTPAdapter):
    """HTTPAdapter whose connection pools use a fixed SSL context."""

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        self.ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(*args, **kwargs)


def _close_orphan(future: asyncio.Future) -> None:
    """Close a response whose caller was cancelled while it was in flight."""
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


class RequestsTransport:
    """Transport backed by a requests.Session.

    Blocking calls run in a worker thread so the event loop stays free and
    task cancellation is observed at every await. Response bodies are
    streamed and only pulled when something reads them.
    """

    def __init__(self, config: HandlerConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clock = clock
        self.session = requests.Session()
        self.session.verify = config.verify
        if config.cert:
            self.session.cert = config.cert
        self.session.max_redirects = config.max_redirects
        if config.proxies:
            self.session.proxies.update(config.proxies)
        if config.ssl_version:
            context = build_ssl_context(config.ssl_version)
            if context is not None:
                self.session.mount("https://", TlsAdapter(context))

    def _send(self, request: RequestDescriptor) -> requests.Response:
        body = request.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        return self.session.request(
            method=request.method.upper(),
            url=request.url,
            headers=dict(merge_headers(request.headers)),
            data=body,
            timeout=self.config.timeout,
            allow_redirects=self.config.follow_redirects,
            stream=True,
        )

    async def execute(self, request: RequestDescriptor) -> ResponseDescriptor:
        """Send request and wrap the response.

        requests exceptions are raised as TransportError.
        """
        echo = request.copy()
        logger.debug("Sending %s %s", echo.method, echo.url)
        start = self.clock()
        send = asyncio.ensure_future(asyncio.to_thread(self._send, echo))
        try:
            resp = await asyncio.shield(send)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; close its response when it lands.
            send.add_done_callback(_close_orphan)
            raise
        except requests.exceptions.Timeout as e:
            raise TransportError(f"Request timed out after {self.config.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"Connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request failed: {e}") from e
        elapsed_ms = (self.clock() - start) * 1000
        logger.debug("Received %s from %s in %dms", resp.status_code, echo.url, elapsed_ms)

        def _read() -> bytes:
            try:
                return resp.content
            except requests.exceptions.RequestException as e:
                raise TransportError(f"Failed reading response body: {e}") from e

        return ResponseDescriptor(
            status_code=resp.status_code,
            headers=list(resp.headers.items()),
            request=echo,
            reason=resp.reason or "",
            http_version=_http_version(getattr(resp.raw, "version", None)),
            elapsed_ms=elapsed_ms,
            reader=_read,
            closer=resp.close,
        )

    def close(self) -> None:
        self.session.close()
