import asyncio
import json

import httpx
import pytest

from codeloop.errors import UpstreamProtocolError
from codeloop.gateway import (
    GatewayCaches,
    GatewayConfig,
    GatewayTransport,
    list_available_models,
)
from codeloop.gateway.transport import reshape_event_stream, reshape_line, translate_body


CONFIG = GatewayConfig(
    auth_url="https://auth.example.com",
    client_id="client",
    client_secret="secret",
    base_url="https://gateway.example.com/",
    resource_group="team-a",
)

SONNET = "claude-sonnet-4-5-20250929"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeGateway:
    """Scripted upstream: OAuth server, deployment listing and inference endpoints."""

    def __init__(self):
        self.calls = []
        self.token_status = 200
        self.csrf_token = "csrf-1"
        self.inference = []
        self.deployments = [
            {"id": "d-old", "status": "STOPPED", "details": {"resources": {"backendDetails": {"model": {"name": "anthropic--claude-4.6-sonnet"}}}}},
            {"id": "d-sonnet", "status": "RUNNING", "details": {"resources": {"backendDetails": {"model": {"name": "anthropic--claude-4.6-sonnet"}}}}},
            {"id": "d-haiku", "status": "RUNNING", "model": {"name": "anthropic--claude-4.5-haiku"}},
            {"id": "d-other", "status": "RUNNING", "model": {"name": "mistral-large"}},
        ]

    def count(self, kind):
        return sum(1 for c in self.calls if c[0] == kind)

    def responses(self, *responses):
        self.inference = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        if url.host == "auth.example.com":
            self.calls.append(("token", request))
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="invalid_client")
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if url.path == "/v2/lm/deployments":
            if request.headers.get("X-Csrf-Token") == "Fetch":
                self.calls.append(("csrf", request))
                headers = [
                    ("set-cookie", "session=abc; Path=/; HttpOnly"),
                    ("set-cookie", "route=r1; Secure"),
                ]
                if self.csrf_token:
                    headers.append(("x-csrf-token", self.csrf_token))
                return httpx.Response(200, headers=headers, json={"resources": []})
            self.calls.append(("deployments", request))
            return httpx.Response(200, json={"resources": self.deployments})
        if url.path.startswith("/v2/inference/"):
            self.calls.append(("inference", request))
            if self.inference:
                return self.inference.pop(0)
            return httpx.Response(200, json={"type": "message", "content": []})
        self.calls.append(("passthrough", request))
        return httpx.Response(200, json={"passthrough": True})


def make_client(gateway, caches=None):
    transport = GatewayTransport(
        CONFIG, caches or GatewayCaches(), inner=httpx.MockTransport(gateway)
    )
    return httpx.AsyncClient(transport=transport, base_url="https://api.anthropic.com")


def post_messages(gateway, body, caches=None):
    async def go():
        async with make_client(gateway, caches) as client:
            resp = await client.post("/v1/messages", json=body)
            content = await resp.aread()
            return resp, content

    return asyncio.run(go())


def message_body(**extra):
    return {
        "model": SONNET,
        "max_tokens": 100,
        "messages": [{"role": "user", "content": [{"type": "text", "text": "hi"}]}],
        **extra,
    }


class TestTokenManager:
    def test_cached_until_margin_before_expiry(self):
        gateway = FakeGateway()
        clock = FakeClock()
        caches = GatewayCaches(clock)

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(gateway)) as client:
                await caches.tokens.get_token(client, CONFIG)
                clock.now += 3539
                await caches.tokens.get_token(client, CONFIG)
                assert gateway.count("token") == 1
                clock.now += 1
                await caches.tokens.get_token(client, CONFIG)
                assert gateway.count("token") == 2

        asyncio.run(go())
        request = gateway.calls[0][1]
        assert request.headers["Authorization"].startswith("Basic ")
        assert request.content == b"grant_type=client_credentials"

    def test_failure(self):
        gateway = FakeGateway()
        gateway.token_status = 401

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(gateway)) as client:
                await GatewayCaches().tokens.get_token(client, CONFIG)

        with pytest.raises(UpstreamProtocolError) as exc:
            asyncio.run(go())
        assert str(exc.value) == "OAuth token request failed (401): invalid_client"
        assert exc.value.status_code == 401


class TestDeploymentResolver:
    def resolve(self, gateway, caches, model):
        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(gateway)) as client:
                return await caches.deployments.resolve(client, CONFIG, model)

        return asyncio.run(go())

    def test_picks_running_deployment_and_caches(self):
        gateway = FakeGateway()
        clock = FakeClock()
        caches = GatewayCaches(clock)
        assert self.resolve(gateway, caches, SONNET) == "d-sonnet"
        assert self.resolve(gateway, caches, SONNET) == "d-sonnet"
        assert gateway.count("deployments") == 1
        assert gateway.calls[1][1].headers["AI-Resource-Group"] == "team-a"

        clock.now += 301
        self.resolve(gateway, caches, SONNET)
        assert gateway.count("deployments") == 2

    def test_top_level_model_name(self):
        assert self.resolve(FakeGateway(), GatewayCaches(), "claude-haiku-4-5-20251001") == "d-haiku"

    def test_unknown_model(self):
        gateway = FakeGateway()
        with pytest.raises(UpstreamProtocolError) as exc:
            self.resolve(gateway, GatewayCaches(), "gpt-5")
        assert 'No gateway model mapping for "gpt-5"' in str(exc.value)
        assert gateway.calls == []

    def test_no_running_deployment(self):
        gateway = FakeGateway()
        with pytest.raises(UpstreamProtocolError) as exc:
            self.resolve(gateway, GatewayCaches(), "claude-opus-4-6")
        message = str(exc.value)
        assert 'No running deployment found for model "anthropic--claude-4.6-opus"' in message
        assert "anthropic--claude-4.5-haiku" in message


class TestCsrfManager:
    def fetch(self, gateway, caches):
        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(gateway)) as client:
                return await caches.csrf.get_token(client, CONFIG, "tok")

        return asyncio.run(go())

    def test_token_and_cookies_cached(self):
        gateway = FakeGateway()
        caches = GatewayCaches(FakeClock())
        assert self.fetch(gateway, caches) == ("csrf-1", "session=abc; route=r1")
        self.fetch(gateway, caches)
        assert gateway.count("csrf") == 1
        request = gateway.calls[0][1]
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.url.params.get("$top") == "1"

    def test_missing_token_not_cached(self):
        gateway = FakeGateway()
        gateway.csrf_token = ""
        caches = GatewayCaches(FakeClock())
        assert self.fetch(gateway, caches)[0] == ""
        self.fetch(gateway, caches)
        assert gateway.count("csrf") == 2

    def test_expiry(self):
        gateway = FakeGateway()
        clock = FakeClock()
        caches = GatewayCaches(clock)
        self.fetch(gateway, caches)
        clock.now += 601
        self.fetch(gateway, caches)
        assert gateway.count("csrf") == 2


class TestTranslateBody:
    def test_translation(self):
        body = message_body(
            stream=True,
            system=[{"type": "text", "text": "sys", "cache_control": {"type": "ephemeral"}}],
            tools=[
                {"type": "web_search_20250305", "name": "web_search"},
                {"name": "read_file", "input_schema": {"type": "object"}},
            ],
        )
        body["messages"][0]["content"][0]["cache_control"] = {"type": "ephemeral"}
        payload = translate_body(body)

        assert "model" not in payload
        assert "stream" not in payload
        assert payload["anthropic_version"] == "bedrock-2023-05-31"
        assert payload["system"] == [{"type": "text", "text": "sys"}]
        assert payload["messages"][0]["content"][0] == {"type": "text", "text": "hi"}
        assert payload["tools"] == [{"name": "read_file", "input_schema": {"type": "object"}}]
        assert body["model"] == SONNET

    def test_only_web_search_tools(self):
        payload = translate_body(message_body(tools=[{"type": "web_search_20250305"}]))
        assert "tools" not in payload


class TestReshape:
    def test_reshape_line(self):
        assert reshape_line('data: {"type": "ping"}') == 'event: ping\ndata: {"type": "ping"}'
        assert reshape_line("data: [DONE]") == "data: [DONE]"
        assert reshape_line('data: {"no": "type"}') == 'data: {"no": "type"}'
        assert reshape_line("") == ""
        assert reshape_line(": keepalive") == ": keepalive"

    def test_lines_split_across_chunks(self):
        raw = (
            'data: {"type":"message_start","message":{}}\n\n'
            'data: {"type":"content_block_delta","delta":{"text":"été"}}\n\n'
            'data: {"type":"message_stop"}'
        ).encode()
        split_at = [7, 30, raw.index("é".encode()) + 1, len(raw) - 3]
        chunks = [raw[i:j] for i, j in zip([0, *split_at], [*split_at, len(raw)])]

        async def source():
            for chunk in chunks:
                yield chunk

        async def collect():
            return b"".join([c async for c in reshape_event_stream(source())]).decode()

        assert asyncio.run(collect()) == (
            'event: message_start\ndata: {"type":"message_start","message":{}}\n\n'
            'event: content_block_delta\ndata: {"type":"content_block_delta","delta":{"text":"été"}}\n\n'
            'event: message_stop\ndata: {"type":"message_stop"}'
        )


class TestGatewayTransport:
    def test_plain_request(self):
        gateway = FakeGateway()
        resp, content = post_messages(gateway, message_body())
        assert resp.status_code == 200
        assert json.loads(content) == {"type": "message", "content": []}

        request = [c[1] for c in gateway.calls if c[0] == "inference"][0]
        assert request.url.path == "/v2/inference/deployments/d-sonnet/invoke"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["X-Csrf-Token"] == "csrf-1"
        assert request.headers["Cookie"] == "session=abc; route=r1"
        assert request.headers["AI-Resource-Group"] == "team-a"
        sent = json.loads(request.content)
        assert "model" not in sent
        assert sent["anthropic_version"] == "bedrock-2023-05-31"

    def test_streaming_request_is_reshaped(self):
        gateway = FakeGateway()

        async def upstream():
            yield b'data: {"type":"message_st'
            yield b'art","message":{}}\n\n'

        gateway.responses(
            httpx.Response(200, headers={"content-type": "text/event-stream"}, content=upstream())
        )
        resp, content = post_messages(gateway, message_body(stream=True))
        assert resp.status_code == 200
        assert content.decode() == (
            'event: message_start\ndata: {"type":"message_start","message":{}}\n\n'
        )
        request = [c[1] for c in gateway.calls if c[0] == "inference"][0]
        assert request.url.path.endswith("/invoke-with-response-stream")

    def test_csrf_rejection_retried_once(self):
        gateway = FakeGateway()
        gateway.responses(
            httpx.Response(403, text="CSRF token validation failed"),
            httpx.Response(200, json={"ok": True}),
        )
        resp, content = post_messages(gateway, message_body())
        assert resp.status_code == 200
        assert json.loads(content) == {"ok": True}
        assert gateway.count("csrf") == 2
        assert gateway.count("inference") == 2

    def test_csrf_rejection_not_retried_twice(self):
        gateway = FakeGateway()
        gateway.responses(
            httpx.Response(403, text="CSRF token validation failed"),
            httpx.Response(403, text="CSRF token validation failed"),
            httpx.Response(200, json={"ok": True}),
        )
        resp, content = post_messages(gateway, message_body())
        assert resp.status_code == 403
        assert gateway.count("inference") == 2

    def test_other_forbidden_passed_through(self):
        gateway = FakeGateway()
        gateway.responses(httpx.Response(403, text="Access denied for resource group"))
        resp, content = post_messages(gateway, message_body())
        assert resp.status_code == 403
        assert content == b"Access denied for resource group"
        assert gateway.count("inference") == 1
        assert gateway.count("csrf") == 1

    def test_upstream_error_passed_through(self):
        gateway = FakeGateway()
        gateway.responses(httpx.Response(429, json={"error": "slow down"}))
        resp, content = post_messages(gateway, message_body(stream=True))
        assert resp.status_code == 429
        assert json.loads(content) == {"error": "slow down"}

    def test_auxiliary_failure_becomes_error_response(self):
        gateway = FakeGateway()
        gateway.token_status = 401
        resp, content = post_messages(gateway, message_body())
        assert resp.status_code == 401
        error = json.loads(content)
        assert error["type"] == "error"
        assert error["error"]["message"].startswith("OAuth token request failed (401)")

    def test_unknown_model_is_bad_gateway(self):
        gateway = FakeGateway()
        resp, _ = post_messages(gateway, message_body(model="gpt-5"))
        assert resp.status_code == 502

    def test_caches_shared_across_requests(self):
        gateway = FakeGateway()
        caches = GatewayCaches(FakeClock())
        post_messages(gateway, message_body(), caches)
        post_messages(gateway, message_body(), caches)
        assert gateway.count("token") == 1
        assert gateway.count("deployments") == 1
        assert gateway.count("csrf") == 1
        assert gateway.count("inference") == 2

    def test_other_requests_pass_through(self):
        gateway = FakeGateway()

        async def go():
            async with make_client(gateway) as client:
                models = await client.get("/v1/models")
                count = await client.post("/v1/messages/count_tokens", json={})
                return models, count

        models, count = asyncio.run(go())
        assert models.json() == {"passthrough": True}
        assert count.json() == {"passthrough": True}
        assert [c[0] for c in gateway.calls] == ["passthrough", "passthrough"]


def test_list_available_models():
    gateway = FakeGateway()

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(gateway)) as client:
            return await list_available_models(client, CONFIG, GatewayCaches())

    assert asyncio.run(go()) == [SONNET, "claude-haiku-4-5-20251001"]
