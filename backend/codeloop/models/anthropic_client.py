import logging
from typing import Any

import anthropic
import httpx

from codeloop.agent.callbacks import AgentCallbacks
from codeloop.agent.parsing import parse_tool_input
from codeloop.models.base import ModelClient, ModelTurn, ToolCall


logger = logging.getLogger("codeloop.models.anthropic")


class AnthropicModelClient(ModelClient):
    """Streams Messages API turns and relays deltas to the callbacks."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_tokens: int = 8192,
        base_url: str | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self._client = anthropic.AsyncAnthropic(
            api_key=api_key, http_client=http_client, base_url=base_url
        )

    async def send(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        callbacks: AgentCallbacks,
    ) -> ModelTurn:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": messages,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools
        stream = await self._client.messages.create(**kwargs)

        text: list[str] = []
        pending: dict[int, dict[str, str]] = {}
        usage: dict[str, int] = {}
        async for event in stream:
            if event.type == "message_start":
                usage["input_tokens"] = event.message.usage.input_tokens or 0
                usage["output_tokens"] = event.message.usage.output_tokens or 0
            elif event.type == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    pending[event.index] = {"id": block.id, "name": block.name, "json": ""}
                    callbacks.on_tool_start(event.index, block.name)
            elif event.type == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    text.append(delta.text)
                    callbacks.on_text(delta.text)
                elif delta.type == "input_json_delta" and event.index in pending:
                    pending[event.index]["json"] += delta.partial_json
                    callbacks.on_tool_delta(event.index, delta.partial_json)
            elif event.type == "message_delta":
                if event.usage is not None and event.usage.output_tokens is not None:
                    usage["output_tokens"] = event.usage.output_tokens
                if event.delta.stop_reason == "max_tokens":
                    logger.warning("model %s hit max_tokens; tool input may be truncated", self.model)

        calls = [
            ToolCall(id=p["id"], name=p["name"], args=parse_tool_input(p["json"], p["name"]))
            for _, p in sorted(pending.items())
        ]
        return ModelTurn(text="".join(text), tool_calls=calls, usage=usage)

    async def aclose(self) -> None:
        await self._client.close()
