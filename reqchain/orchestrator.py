"""reqchain orchestrator - runs curl and http scripts through the pipelines.

One run executes its requests strictly in order. Each request of an http
script is resolved against the responses retained so far, shaped by the
request pipeline, sent, post-processed by the response pipeline and then
retained under its name. Every retained response is released when the run
ends, however it ends.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from pathlib import Path

from reqchain.core import RunOptions, parse_curl, parse_http_script
from reqchain.errors import ReleaseError
from reqchain.executor import RequestsTransport, Transport, TransportFactory
from reqchain.middleware import (
    AuthMiddleware,
    DownloadMiddleware,
    FollowRedirectMiddleware,
    HeadersMiddleware,
    ProxyMiddleware,
    RequestEchoMiddleware,
    ResponseEchoMiddleware,
    SslMiddleware,
    UserAgentMiddleware,
)
from reqchain.models import ExecutionRecord, HandlerConfig, RequestDescriptor, ResponseDescriptor
from reqchain.pipeline import Pipeline, build_pipeline
from reqchain.variables import resolve_variables

logger = logging.getLogger(__name__)


def release_records(records: Iterable[ExecutionRecord]) -> int:
    """Release every record, logging failures. Returns how many failed."""
    failures = 0
    for record in records:
        try:
            record.release()
        except ReleaseError as e:
            failures += 1
            logger.warning("%s", e)
    return failures


class Orchestrator:
    """Drives one or more script runs over a fixed set of pipelines."""

    def __init__(
        self,
        options: RunOptions,
        handler_pipeline: Pipeline[HandlerConfig],
        request_pipeline: Pipeline[RequestDescriptor],
        response_pipeline: Pipeline[ResponseDescriptor],
        transport_factory: TransportFactory = RequestsTransport,
    ):
        self.options = options
        self.handler_pipeline = handler_pipeline
        self.request_pipeline = request_pipeline
        self.response_pipeline = response_pipeline
        self.transport_factory = transport_factory

    async def open_transport(self) -> Transport:
        config = HandlerConfig(timeout=self.options.timeout)
        await self.handler_pipeline.invoke(config)
        return self.transport_factory(config)

    async def execute(self, transport: Transport, request: RequestDescriptor) -> ResponseDescriptor:
        """Send one request through the request pipeline, transport and response pipeline."""
        await self.request_pipeline.invoke(request)
        response = await transport.execute(request)
        try:
            await self.response_pipeline.invoke(response)
        except BaseException:
            response.close()
            raise
        return response

    async def run_requests(
        self,
        requests: Iterable[RequestDescriptor],
        resolve: bool = True,
    ) -> list[ExecutionRecord]:
        """Execute requests in order, stopping at the first failure.

        All responses are retained until the run ends and then released,
        also when a request fails or the run is cancelled. The returned
        records are already released.
        """
        records: list[ExecutionRecord] = []
        by_name: dict[str, ExecutionRecord] = {}
        transport: Transport | None = None
        try:
            for request in requests:
                if resolve:
                    await resolve_variables(request, by_name)
                if transport is None:
                    transport = await self.open_transport()
                response = await self.execute(transport, request)
                record = ExecutionRecord(request.name, response)
                records.append(record)
                if request.name:
                    by_name[request.name] = record
        finally:
            failures = release_records(records)
            logger.debug("Released %d responses (%d failed)", len(records), failures)
            if transport is not None:
                transport.close()
        return records

    async def run_curl(self, script: str) -> list[ExecutionRecord]:
        request = parse_curl(script)
        return await self.run_requests([request], resolve=False)

    async def run_curl_file(self, path: str | Path) -> list[ExecutionRecord]:
        script = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        return await self.run_curl(script)

    async def run_http_script(self, text: str) -> list[ExecutionRecord]:
        return await self.run_requests(parse_http_script(text))

    async def run_http_file(self, path: str | Path) -> list[ExecutionRecord]:
        text = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        return await self.run_http_script(text)


def build_orchestrator(
    options: RunOptions,
    echo: Callable[[str], None] | None = None,
    transport_factory: TransportFactory = RequestsTransport,
) -> Orchestrator:
    """Compose the default stages, in order, into an Orchestrator."""
    handler_stages = [
        FollowRedirectMiddleware(options.follow_redirects, options.max_redirects),
        SslMiddleware(options.verify, options.cert, options.ssl_version),
    ]
    if options.proxies:
        handler_stages.append(ProxyMiddleware(options.proxies))
    request_stages = [
        HeadersMiddleware(options.default_headers, options.headers),
        AuthMiddleware(options.auth_headers),
        UserAgentMiddleware(options.user_agent),
    ]
    if echo is not None:
        request_stages.append(RequestEchoMiddleware(echo))
    response_stages = []
    if options.download:
        response_stages.append(DownloadMiddleware(options.output, options.append))
    if echo is not None:
        response_stages.append(ResponseEchoMiddleware(echo))

    return Orchestrator(
        options,
        build_pipeline(handler_stages),
        build_pipeline(request_stages),
        build_pipeline(response_stages),
        transport_factory=transport_factory,
    )
