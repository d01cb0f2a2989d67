"""httpx transport that routes Anthropic Messages API calls through the gateway.

Install it on any httpx-based client (``httpx.AsyncClient(transport=...)``) and
requests to ``POST .../messages`` are rewritten for the gateway: OAuth bearer,
deployment URL, CSRF token and cookies, body translation, and an event stream
reshaped back into the named-event form the client expects. Everything else
passes straight through to the inner transport.
"""

import codecs
import copy
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from codeloop.errors import UpstreamProtocolError
from codeloop.gateway.auth import GatewayCaches
from codeloop.gateway.config import ANTHROPIC_VERSION, GatewayConfig


logger = logging.getLogger("codeloop.gateway")

_DROPPED_RESPONSE_HEADERS = ("content-encoding", "content-length", "transfer-encoding")


def translate_body(body: dict[str, Any]) -> dict[str, Any]:
    """Convert a Messages API body into the shape the gateway deployment accepts."""
    payload = copy.deepcopy(body)
    payload.pop("model", None)
    payload.pop("stream", None)
    payload["anthropic_version"] = ANTHROPIC_VERSION

    system = payload.get("system")
    if isinstance(system, list):
        for block in system:
            if isinstance(block, dict):
                block.pop("cache_control", None)
    for message in payload.get("messages") or []:
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict):
                    block.pop("cache_control", None)

    tools = payload.get("tools")
    if isinstance(tools, list):
        kept = [
            t
            for t in tools
            if not (isinstance(t, dict) and str(t.get("type", "")).startswith("web_search"))
        ]
        if kept:
            payload["tools"] = kept
        else:
            payload.pop("tools")
    return payload


def reshape_line(line: str) -> str:
    """Prefix a ``data:`` line carrying a typed JSON event with its ``event:`` line."""
    if not line.startswith("data: "):
        return line
    try:
        event = json.loads(line[len("data: ") :])
    except ValueError:
        return line
    if isinstance(event, dict) and event.get("type"):
        return f"event: {event['type']}\n{line}"
    return line


async def reshape_event_stream(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Apply :func:`reshape_line` to a byte stream whose lines may span chunks."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        if lines:
            yield "".join(f"{reshape_line(line)}\n" for line in lines).encode()
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield reshape_line(buffer).encode()


class ReshapedStream(httpx.AsyncByteStream):
    def __init__(self, upstream: httpx.Response):
        self._upstream = upstream

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in reshape_event_stream(self._upstream.aiter_bytes()):
            yield chunk

    async def aclose(self) -> None:
        await self._upstream.aclose()


def _response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    return [(k, v) for k, v in headers.multi_items() if k.lower() not in _DROPPED_RESPONSE_HEADERS]


def _error_response(request: httpx.Request, error: UpstreamProtocolError) -> httpx.Response:
    return httpx.Response(
        error.status_code or 502,
        json={"type": "error", "error": {"type": "api_error", "message": str(error)}},
        request=request,
    )


class GatewayTransport(httpx.AsyncBaseTransport):
    def __init__(
        self,
        config: GatewayConfig,
        caches: GatewayCaches | None = None,
        inner: httpx.AsyncBaseTransport | None = None,
        default_model: str | None = None,
        timeout: httpx.Timeout | float = httpx.Timeout(600.0, connect=10.0),
    ):
        self.config = config
        self.caches = caches or GatewayCaches()
        self.default_model = default_model
        self._inner = inner or httpx.AsyncHTTPTransport()
        self._client = httpx.AsyncClient(transport=self._inner, timeout=timeout)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.method != "POST" or not request.url.path.endswith("/messages"):
            return await self._inner.handle_async_request(request)
        try:
            return await self._forward(request)
        except UpstreamProtocolError as e:
            logger.error("gateway request failed: %s", e)
            return _error_response(request, e)

    async def _forward(self, request: httpx.Request) -> httpx.Response:
        config = self.config
        caches = self.caches
        body = json.loads(await request.aread() or b"{}")
        model = body.get("model") or self.default_model
        if not model:
            raise UpstreamProtocolError("No model given for gateway request", status_code=400)
        streaming = body.get("stream") is True

        token = await caches.tokens.get_token(self._client, config)
        deployment_id = await caches.deployments.resolve(self._client, config, model)
        payload = json.dumps(translate_body(body))
        endpoint = "invoke-with-response-stream" if streaming else "invoke"
        url = f"{config.api_url}/v2/inference/deployments/{deployment_id}/{endpoint}"

        csrf, cookies = await caches.csrf.get_token(self._client, config, token)
        logger.debug("%s request to deployment %s", "streaming" if streaming else "plain", deployment_id)
        upstream = await self._post(url, payload, token, csrf, cookies)

        if upstream.status_code == 403:
            text = (await upstream.aread()).decode("utf-8", errors="replace")
            if "csrf" not in text.lower():
                return await self._buffered(request, upstream)
            await upstream.aclose()
            logger.info("CSRF token rejected, refetching and retrying once")
            caches.csrf.invalidate(config)
            csrf, cookies = await caches.csrf.get_token(self._client, config, token)
            upstream = await self._post(url, payload, token, csrf, cookies)

        if upstream.is_error or not streaming:
            return await self._buffered(request, upstream)
        return httpx.Response(
            upstream.status_code,
            headers=_response_headers(upstream.headers),
            stream=ReshapedStream(upstream),
            request=request,
        )

    async def _post(
        self, url: str, payload: str, token: str, csrf: str, cookies: str
    ) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            "AI-Resource-Group": self.config.resource_group,
        }
        if csrf:
            headers["X-Csrf-Token"] = csrf
        if cookies:
            headers["Cookie"] = cookies
        outgoing = self._client.build_request("POST", url, content=payload, headers=headers)
        return await self._client.send(outgoing, stream=True)

    async def _buffered(self, request: httpx.Request, upstream: httpx.Response) -> httpx.Response:
        try:
            content = await upstream.aread()
        finally:
            await upstream.aclose()
        return httpx.Response(
            upstream.status_code,
            headers=_response_headers(upstream.headers),
            content=content,
            request=request,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def gateway_http_client(
    config: GatewayConfig,
    caches: GatewayCaches | None = None,
    inner: httpx.AsyncBaseTransport | None = None,
    default_model: str | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=GatewayTransport(config, caches, inner=inner, default_model=default_model),
        timeout=httpx.Timeout(600.0, connect=10.0),
    )
