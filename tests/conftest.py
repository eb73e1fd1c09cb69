"""Shared fixtures for reqchain tests."""

import json

import pytest
from click.testing import CliRunner

from reqchain import core
from reqchain.models import ResponseDescriptor


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_reqchain_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqchain directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqchain"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


@pytest.fixture
def transport_stub():
    return TransportStub()


def make_response(
    request,
    status_code=200,
    body=None,
    headers=None,
    elapsed_ms=42.0,
    closer=None,
):
    """Factory for ResponseDescriptor objects.

    dict/list bodies are sent as JSON with a matching Content-Type.
    """
    headers = list((headers or {}).items())
    if isinstance(body, dict | list):
        body = json.dumps(body)
        if not any(k.lower() == "content-type" for k, _ in headers):
            headers.append(("Content-Type", "application/json"))
    if isinstance(body, str):
        body = body.encode("utf-8")
    return ResponseDescriptor(
        status_code=status_code,
        headers=headers,
        request=request,
        reason="OK" if status_code == 200 else "",
        elapsed_ms=elapsed_ms,
        body=body,
        closer=closer,
    )


class FakeTransport:
    def __init__(self, config, stub):
        self.config = config
        self.stub = stub
        self.closed = False

    async def execute(self, request):
        echo = request.copy()
        self.stub.sent.append(echo)
        if not self.stub.replies:
            response = make_response(echo)
        else:
            reply = self.stub.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            response = make_response(echo, **reply)
        self.stub.responses.append(response)
        return response

    def close(self):
        self.closed = True


class TransportStub:
    """Transport factory double. Records built transports, sent requests
    and returned responses; replies are queued as make_response kwargs or
    exceptions to raise."""

    def __init__(self):
        self.replies = []
        self.transports = []
        self.sent = []
        self.responses = []

    def reply(self, *replies):
        self.replies.extend(replies)
        return self

    def __call__(self, config):
        transport = FakeTransport(config, self)
        self.transports.append(transport)
        return transport
