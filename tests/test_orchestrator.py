"""Scenario tests for script runs: ordering, chaining and response release."""

import asyncio
import logging

import pytest

from reqchain.core import RunOptions
from reqchain.errors import FormatError, TransportError
from reqchain.models import ExecutionRecord, RequestDescriptor
from reqchain.orchestrator import Orchestrator, build_orchestrator, release_records
from reqchain.pipeline import build_pipeline
from tests.conftest import make_response

CHAINED = """\
### login
POST https://api.test/auth
Content-Type: application/json

{"user": "admin"}

### me
POST https://api.test/me
Content-Type: application/json

{"token": "{{login.response.body.$.token}}"}
"""


def _orchestrator(stub, options=None, echo=None):
    return build_orchestrator(options or RunOptions(), echo=echo, transport_factory=stub)


class TestChaining:
    @pytest.mark.asyncio
    async def test_response_value_flows_into_next_body(self, transport_stub):
        transport_stub.reply({"body": {"token": "abc"}}, {"body": "ok"})
        records = await _orchestrator(transport_stub).run_http_script(CHAINED)

        assert [r.name for r in records] == ["login", "me"]
        assert [s.url for s in transport_stub.sent] == ["https://api.test/auth", "https://api.test/me"]
        assert transport_stub.sent[1].body == '{"token": "abc"}'

    @pytest.mark.asyncio
    async def test_all_responses_released_after_success(self, transport_stub):
        transport_stub.reply({"body": {"token": "abc"}}, {"body": "ok"})
        await _orchestrator(transport_stub).run_http_script(CHAINED)

        assert all(r.closed for r in transport_stub.responses)
        assert transport_stub.transports[0].closed

    @pytest.mark.asyncio
    async def test_later_request_shadows_earlier_name(self, transport_stub):
        script = (
            "### a\nGET https://api.test/1\n"
            "### a\nGET https://api.test/2\n"
            "### b\nPOST https://api.test/3\n\n{{a.response.body}}\n"
        )
        transport_stub.reply({"body": "first"}, {"body": "second"}, {})
        records = await _orchestrator(transport_stub).run_http_script(script)

        assert transport_stub.sent[2].body == "second"
        assert len(records) == 3
        assert all(r.closed for r in transport_stub.responses)

    @pytest.mark.asyncio
    async def test_unnamed_responses_are_not_referenceable(self, transport_stub):
        script = "GET https://api.test/1\n###\nPOST https://api.test/2\n\n[{{x.response.body}}]\n"
        transport_stub.reply({"body": "anon"}, {})
        records = await _orchestrator(transport_stub).run_http_script(script)

        assert transport_stub.sent[1].body == "[]"
        assert records[0].name is None
        assert records[0].response.closed

    @pytest.mark.asyncio
    async def test_response_header_into_request_header(self, transport_stub):
        script = (
            "### create\nPOST https://api.test/items\n"
            "### fetch\nGET https://api.test/items\nX-Item: {{create.response.headers.Location}}\n"
        )
        transport_stub.reply({"headers": {"Location": "/items/7"}}, {})
        await _orchestrator(transport_stub).run_http_script(script)

        assert transport_stub.sent[1].header("X-Item") == "/items/7"


class TestReleaseOnFailure:
    @pytest.mark.asyncio
    async def test_transport_failure_releases_earlier_responses(self, transport_stub):
        transport_stub.reply({"body": {"token": "abc"}}, TransportError("Connection error: refused"))

        with pytest.raises(TransportError, match="refused"):
            await _orchestrator(transport_stub).run_http_script(CHAINED)

        assert len(transport_stub.responses) == 1
        assert transport_stub.responses[0].closed
        assert transport_stub.transports[0].closed

    @pytest.mark.asyncio
    async def test_format_error_after_first_request(self, transport_stub):
        script = "### ok\nGET https://api.test/ok\n### bad\nGET /relative\n"

        with pytest.raises(FormatError):
            await _orchestrator(transport_stub).run_http_script(script)

        assert len(transport_stub.sent) == 1
        assert transport_stub.responses[0].closed

    @pytest.mark.asyncio
    async def test_release_failure_is_logged_and_others_released(self, transport_stub, caplog):
        def broken_close():
            raise OSError("socket already gone")

        transport_stub.reply({"closer": broken_close}, {})
        script = "### a\nGET https://api.test/a\n### b\nGET https://api.test/b\n"

        with caplog.at_level(logging.WARNING, logger="reqchain.orchestrator"):
            records = await _orchestrator(transport_stub).run_http_script(script)

        assert len(records) == 2
        assert transport_stub.responses[1].closed
        assert "socket already gone" in caplog.text

    @pytest.mark.asyncio
    async def test_response_stage_failure_closes_response(self, transport_stub):
        async def failing(response, next):
            raise RuntimeError("stage broke")

        orchestrator = Orchestrator(
            RunOptions(),
            build_pipeline([]),
            build_pipeline([]),
            build_pipeline([failing]),
            transport_factory=transport_stub,
        )
        with pytest.raises(RuntimeError, match="stage broke"):
            await orchestrator.run_http_script("GET https://api.test/a\n")

        assert transport_stub.responses[0].closed

    @pytest.mark.asyncio
    async def test_cancellation_releases_responses(self):
        started = asyncio.Event()
        first_response = None

        class HangingTransport:
            def __init__(self, config):
                self.closed = False
                self.calls = 0

            async def execute(self, request):
                nonlocal first_response
                self.calls += 1
                if self.calls == 1:
                    first_response = make_response(request.copy(), body="one")
                    return first_response
                started.set()
                await asyncio.Event().wait()

            def close(self):
                self.closed = True

        orchestrator = _orchestrator(HangingTransport)
        task = asyncio.create_task(
            orchestrator.run_http_script("### a\nGET https://api.test/a\n### b\nGET https://api.test/b\n")
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert first_response.closed


class TestRelease:
    def test_release_records_counts_failures(self):
        def broken():
            raise OSError("boom")

        ok = make_response(RequestDescriptor())
        bad = make_response(RequestDescriptor(), closer=broken)

        failures = release_records([ExecutionRecord("bad", bad), ExecutionRecord("ok", ok)])
        assert failures == 1
        assert ok.closed

    def test_release_is_idempotent(self):
        calls = []
        response = make_response(RequestDescriptor(), closer=lambda: calls.append(1))
        response.close()
        response.close()
        assert calls == [1]


class TestPipelines:
    @pytest.mark.asyncio
    async def test_handler_pipeline_shapes_transport_config(self, transport_stub):
        options = RunOptions(timeout=5, verify=False, follow_redirects=False, max_redirects=2)
        await _orchestrator(transport_stub, options).run_http_script("GET https://api.test/\n")

        config = transport_stub.transports[0].config
        assert config.timeout == 5
        assert config.verify is False
        assert config.follow_redirects is False
        assert config.max_redirects == 2

    @pytest.mark.asyncio
    async def test_one_transport_per_run(self, transport_stub):
        script = "GET https://api.test/1\n###\nGET https://api.test/2\n"
        await _orchestrator(transport_stub).run_http_script(script)
        assert len(transport_stub.transports) == 1

    @pytest.mark.asyncio
    async def test_empty_script_opens_no_transport(self, transport_stub):
        records = await _orchestrator(transport_stub).run_http_script("# nothing here\n")
        assert records == []
        assert transport_stub.transports == []

    @pytest.mark.asyncio
    async def test_request_stages_applied_before_sending(self, transport_stub):
        options = RunOptions(
            default_headers=[("Accept", "application/json")],
            headers=[("X-Trace", "cli")],
            auth_headers=[("Authorization", "Bearer cfg")],
        )
        script = "GET https://api.test/\nX-Trace: script\n"
        await _orchestrator(transport_stub, options).run_http_script(script)

        sent = transport_stub.sent[0]
        assert sent.header("Accept") == "application/json"
        assert sent.header("X-Trace") == "cli"
        assert sent.header("Authorization") == "Bearer cfg"
        assert sent.header("User-Agent") == options.user_agent

    @pytest.mark.asyncio
    async def test_references_resolve_before_request_stages(self, transport_stub):
        options = RunOptions(headers=[("X-Ref", "{{a.response.body}}")])
        script = "### a\nGET https://api.test/a\n### b\nGET https://api.test/b\n"
        transport_stub.reply({"body": "v"}, {})
        await _orchestrator(transport_stub, options).run_http_script(script)

        assert transport_stub.sent[1].header("X-Ref") == "{{a.response.body}}"

    @pytest.mark.asyncio
    async def test_echo_prints_each_exchange(self, transport_stub):
        lines = []
        transport_stub.reply({"body": {"token": "abc"}}, {"body": "ok"})
        await _orchestrator(transport_stub, echo=lines.append).run_http_script(CHAINED)

        assert lines.count("Request message:") == 2
        assert "login" in lines
        assert "me" in lines

    @pytest.mark.asyncio
    async def test_echo_prints_request_when_transport_fails(self, transport_stub):
        lines = []
        transport_stub.reply(TransportError("Connection error: refused"))
        with pytest.raises(TransportError):
            await _orchestrator(transport_stub, echo=lines.append).run_curl("curl https://api.test/x")

        assert lines[0] == "Request message:"
        assert lines[1].startswith("GET https://api.test/x HTTP/1.1")
        assert not any(line.startswith("Response message") for line in lines)

    @pytest.mark.asyncio
    async def test_echoed_request_shows_stage_headers(self, transport_stub):
        lines = []
        options = RunOptions(auth_headers=[("Authorization", "Bearer cfg")])
        await _orchestrator(transport_stub, options, echo=lines.append).run_http_script("GET https://api.test/\n")

        assert "Authorization: Bearer cfg" in lines[1]
        assert f"User-Agent: {options.user_agent}" in lines[1]

    @pytest.mark.asyncio
    async def test_ssl_protocol_and_proxies_reach_transport(self, transport_stub):
        options = RunOptions(ssl_version="tls1.2", proxies={"https": "http://proxy.local:3128"})
        await _orchestrator(transport_stub, options).run_http_script("GET https://api.test/\n")

        config = transport_stub.transports[0].config
        assert config.ssl_version == "tls1.2"
        assert config.proxies == {"https": "http://proxy.local:3128"}


class TestCurl:
    @pytest.mark.asyncio
    async def test_curl_is_not_resolved(self, transport_stub):
        await _orchestrator(transport_stub).run_curl("curl -d '{{a.response.body}}' https://api.test/")
        assert transport_stub.sent[0].body == "{{a.response.body}}"

    @pytest.mark.asyncio
    async def test_curl_format_error_sends_nothing(self, transport_stub):
        with pytest.raises(FormatError):
            await _orchestrator(transport_stub).run_curl("wget https://api.test/")
        assert transport_stub.transports == []

    @pytest.mark.asyncio
    async def test_curl_file(self, transport_stub, tmp_path):
        script = tmp_path / "req.curl"
        script.write_text("curl -X POST \\\n  https://api.test/items \\\n  -d 'x=1'\n")
        records = await _orchestrator(transport_stub).run_curl_file(script)

        assert len(records) == 1
        assert transport_stub.sent[0].method == "POST"
        assert transport_stub.sent[0].body == "x=1"
        assert records[0].response.closed

    @pytest.mark.asyncio
    async def test_http_file(self, transport_stub, tmp_path):
        script = tmp_path / "chain.http"
        script.write_text(CHAINED)
        transport_stub.reply({"body": {"token": "t1"}}, {})
        await _orchestrator(transport_stub).run_http_file(str(script))

        assert transport_stub.sent[1].body == '{"token": "t1"}'
