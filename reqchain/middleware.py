"""reqchain middleware - stages for the handler, request and response pipelines."""

import asyncio
import logging
import mimetypes
from collections.abc import Callable
from datetime import datetime
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlsplit

from reqchain.filters import format_request, format_response
from reqchain.models import (
    HandlerConfig,
    Headers,
    RequestDescriptor,
    ResponseDescriptor,
    add_header_if_missing,
    set_header,
)
from reqchain.pipeline import Next

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "reqchain/0.1"


# ── Handler stages ───────────────────────────────────────────────────────


class SslMiddleware:
    """Certificate verification, client certificate and protocol settings."""

    def __init__(
        self,
        verify: bool | str = True,
        cert: str | None = None,
        ssl_version: str | None = None,
    ):
        self.verify = verify
        self.cert = cert
        self.ssl_version = ssl_version

    async def __call__(self, config: HandlerConfig, next: Next) -> None:
        config.verify = self.verify
        if self.cert:
            config.cert = self.cert
        if self.ssl_version:
            config.ssl_version = self.ssl_version
        if self.verify is False:
            logger.info("TLS certificate verification disabled")
        await next()


class ProxyMiddleware:
    def __init__(self, proxies: dict[str, str]):
        self.proxies = dict(proxies)

    async def __call__(self, config: HandlerConfig, next: Next) -> None:
        config.proxies.update(self.proxies)
        await next()


class FollowRedirectMiddleware:
    def __init__(self, follow: bool = True, max_redirects: int | None = None):
        self.follow = follow
        self.max_redirects = max_redirects

    async def __call__(self, config: HandlerConfig, next: Next) -> None:
        config.follow_redirects = self.follow
        if self.max_redirects is not None:
            config.max_redirects = self.max_redirects
        await next()


# ── Request stages ───────────────────────────────────────────────────────


class HeadersMiddleware:
    """Apply config default headers (only when absent) and forced headers.

    Forced headers, from the command line, replace whatever the script set.
    """

    def __init__(self, defaults: Headers | None = None, overrides: Headers | None = None):
        self.defaults = list(defaults or [])
        self.overrides = list(overrides or [])

    async def __call__(self, request: RequestDescriptor, next: Next) -> None:
        for key, value in self.defaults:
            add_header_if_missing(request.headers, key, value)
        for key, value in self.overrides:
            set_header(request.headers, key, value)
        await next()


class AuthMiddleware:
    """Add configured auth headers unless the request carries its own."""

    def __init__(self, auth_headers: Headers):
        self.auth_headers = list(auth_headers)

    async def __call__(self, request: RequestDescriptor, next: Next) -> None:
        for key, value in self.auth_headers:
            add_header_if_missing(request.headers, key, value)
        await next()


class UserAgentMiddleware:
    def __init__(self, user_agent: str = DEFAULT_USER_AGENT):
        self.user_agent = user_agent

    async def __call__(self, request: RequestDescriptor, next: Next) -> None:
        add_header_if_missing(request.headers, "User-Agent", self.user_agent)
        await next()


# ── Response stages ──────────────────────────────────────────────────────


def filename_from_content_disposition(value: str | None) -> str | None:
    """Extract filename= from a Content-Disposition header value."""
    if not value:
        return None
    separator = "filename="
    index = value.lower().find(separator)
    if index > 0 and len(value) > index + len(separator):
        name = value[index + len(separator) :].split(";")[0].strip().strip("\"'").strip(".")
        return name or None
    return None


def filename_from_url(url: str, content_type: str | None) -> str:
    """Guess a file name from the URL path, falling back on the content type."""
    path = PurePosixPath(unquote(urlsplit(url).path))
    stem = path.stem
    if not stem:
        return ""
    extension = path.suffix
    if not extension and content_type:
        media_type = content_type.split(";")[0].strip()
        extension = mimetypes.guess_extension(media_type) or ""
    return f"{stem}{extension}"


class DownloadMiddleware:
    """Persist the response body to a file.

    The file name comes from the explicit output path, then the
    Content-Disposition header, then the URL, then a timestamp.
    """

    def __init__(
        self,
        output: str | None = None,
        append: bool = False,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.output = output
        self.append = append
        self.now = now

    def target_path(self, response: ResponseDescriptor) -> Path:
        output = self.output
        if not output or not output.strip():
            output = filename_from_content_disposition(response.header("Content-Disposition"))
        if not output:
            output = filename_from_url(response.request.url, response.header("Content-Type"))
        if not output:
            output = f"{self.now():%Y%m%d-%H%M%S}.tmp"
        return Path(output)

    async def __call__(self, response: ResponseDescriptor, next: Next) -> None:
        path = self.target_path(response)
        if self.append:
            text = await response.read_text()

            def _append() -> None:
                with open(path, "a", encoding="utf-8") as f:
                    f.write(text)

            await asyncio.to_thread(_append)
        else:
            await asyncio.to_thread(path.write_bytes, await response.read_body())
        logger.info("Saved response body to %s", path)
        await next()


class RequestEchoMiddleware:
    """Print the request as it is about to be sent, before the transport runs.

    Registered last among the request stages, so the output shows every
    header the other stages added.
    """

    def __init__(self, echo: Callable[[str], None]):
        self.echo = echo

    async def __call__(self, request: RequestDescriptor, next: Next) -> None:
        if request.name:
            self.echo(request.name)
        self.echo("Request message:")
        self.echo(format_request(request))
        await next()


class ResponseEchoMiddleware:
    def __init__(self, echo: Callable[[str], None]):
        self.echo = echo

    async def __call__(self, response: ResponseDescriptor, next: Next) -> None:
        body = await response.read_text()
        self.echo(f"Response message({int(response.elapsed_ms)}ms):")
        self.echo(format_response(response, body))
        self.echo("")
        await next()
