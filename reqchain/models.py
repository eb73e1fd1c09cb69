"""reqchain models - request, response and execution records."""

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from reqchain.errors import ReleaseError

logger = logging.getLogger(__name__)

Headers = list[tuple[str, str]]

_CHARSET_RE = re.compile(r"charset=([\w.:-]+)", re.IGNORECASE)


# ── Header helpers ───────────────────────────────────────────────────────


def get_header(headers: Headers, name: str) -> str | None:
    """Case-insensitive header lookup. Repeated headers join with a comma."""
    lower = name.lower()
    values = [v for k, v in headers if k.lower() == lower]
    if not values:
        return None
    return ",".join(values)


def has_header(headers: Headers, name: str) -> bool:
    lower = name.lower()
    return any(k.lower() == lower for k, _ in headers)


def set_header(headers: Headers, name: str, value: str) -> None:
    """Replace every header called name with a single name: value entry.

    The new entry takes the position of the first existing one, or is
    appended when the header is absent.
    """
    lower = name.lower()
    position = None
    kept: Headers = []
    for k, v in headers:
        if k.lower() == lower:
            if position is None:
                position = len(kept)
            continue
        kept.append((k, v))
    if position is None:
        position = len(kept)
    kept.insert(position, (name, value))
    headers[:] = kept


def add_header_if_missing(headers: Headers, name: str, value: str) -> bool:
    if has_header(headers, name):
        return False
    headers.append((name, value))
    return True


def merge_headers(pairs: list[tuple[str, str]]) -> Headers:
    """Group headers by name (case-insensitive), joining values with commas.

    The merged header keeps the casing and position of its first occurrence.
    """
    order: list[str] = []
    names: dict[str, str] = {}
    values: dict[str, list[str]] = {}
    for k, v in pairs:
        lower = k.lower()
        if lower not in values:
            order.append(lower)
            names[lower] = k
            values[lower] = []
        values[lower].append(v)
    return [(names[lower], ",".join(values[lower])) for lower in order]


def decode_body(body: str | bytes | None, content_type: str | None) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    encoding = "utf-8"
    if content_type:
        m = _CHARSET_RE.search(content_type)
        if m:
            encoding = m.group(1).strip("\"'")
    try:
        return body.decode(encoding, errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


# ── Descriptors ──────────────────────────────────────────────────────────


@dataclass
class RequestDescriptor:
    """A single HTTP request parsed from a script."""

    method: str = "GET"
    url: str = ""
    headers: Headers = field(default_factory=list)
    body: str | bytes | None = None
    name: str | None = None

    def header(self, name: str) -> str | None:
        return get_header(self.headers, name)

    def body_text(self) -> str:
        return decode_body(self.body, self.header("Content-Type"))

    def copy(self) -> "RequestDescriptor":
        return RequestDescriptor(
            method=self.method,
            url=self.url,
            headers=list(self.headers),
            body=self.body,
            name=self.name,
        )


@dataclass
class HandlerConfig:
    """Transport handler settings, shaped by the handler pipeline."""

    timeout: float = 30
    verify: bool | str = True
    cert: str | None = None
    ssl_version: str | None = None
    follow_redirects: bool = True
    max_redirects: int = 30
    proxies: dict[str, str] = field(default_factory=dict)


class ResponseDescriptor:
    """A completed HTTP response.

    The body is pulled from the underlying stream at most once and cached,
    so it can be read any number of times afterwards.
    """

    def __init__(
        self,
        status_code: int,
        headers: Headers,
        request: RequestDescriptor,
        reason: str = "",
        http_version: str = "1.1",
        elapsed_ms: float = 0,
        body: bytes | None = None,
        reader: Callable[[], bytes] | None = None,
        closer: Callable[[], Any] | None = None,
    ):
        self.status_code = status_code
        self.headers = headers
        self.request = request
        self.reason = reason
        self.http_version = http_version
        self.elapsed_ms = elapsed_ms
        self._body = body
        self._reader = reader
        self._closer = closer
        self.closed = False

    def header(self, name: str) -> str | None:
        return get_header(self.headers, name)

    async def read_body(self) -> bytes:
        if self._body is None:
            if self._reader is None:
                self._body = b""
            else:
                self._body = await asyncio.to_thread(self._reader)
                self._reader = None
        return self._body

    async def read_text(self) -> str:
        return decode_body(await self.read_body(), self.header("Content-Type"))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._closer is not None:
            self._closer()


@dataclass
class ExecutionRecord:
    """A retained response, kept for back-references until the run ends."""

    name: str | None
    response: ResponseDescriptor

    def release(self) -> None:
        try:
            self.response.close()
        except Exception as e:
            raise ReleaseError(f"Failed to release response '{self.name}': {e}") from e
