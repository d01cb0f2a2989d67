import json
import logging
from typing import Any

from openai import AsyncOpenAI

from codeloop.agent.callbacks import AgentCallbacks
from codeloop.agent.parsing import parse_tool_input
from codeloop.models.base import ModelClient, ModelTurn, ToolCall


logger = logging.getLogger("codeloop.models.openai")


def _image_url(block: dict[str, Any]) -> dict[str, Any]:
    source = block.get("source") or {}
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{source.get('media_type')};base64,{source.get('data')}"},
    }


def to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for t in tools
    ]


def to_openai_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Translate content-block history into chat-completions messages."""
    out: list[dict[str, Any]] = [{"role": "system", "content": system}]
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            out.append({"role": message["role"], "content": content})
            continue
        if message["role"] == "assistant":
            text = "".join(b.get("text", "") for b in content if b.get("type") == "text")
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {"name": b["name"], "arguments": json.dumps(b.get("input") or {})},
                }
                for b in content
                if b.get("type") == "tool_use"
            ]
            if calls:
                entry["tool_calls"] = calls
            out.append(entry)
            continue

        parts: list[dict[str, Any]] = []
        for block in content:
            kind = block.get("type")
            if kind == "tool_result":
                result = block.get("content")
                if isinstance(result, list):
                    text = "\n".join(b.get("text", "") for b in result if b.get("type") == "text")
                    parts.extend(_image_url(b) for b in result if b.get("type") == "image")
                else:
                    text = str(result)
                out.append({"role": "tool", "tool_call_id": block["tool_use_id"], "content": text})
            elif kind == "text":
                parts.append({"type": "text", "text": block.get("text", "")})
            elif kind == "image":
                parts.append(_image_url(block))
        if parts:
            out.append({"role": "user", "content": parts})
    return out


class OpenAIModelClient(ModelClient):
    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        max_tokens: int = 8192,
        reasoning_effort: str | None = None,
        base_url: str | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.reasoning_effort = reasoning_effort
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def send(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        callbacks: AgentCallbacks,
    ) -> ModelTurn:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(system, messages),
            "max_completion_tokens": self.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = to_openai_tools(tools)
        if self.reasoning_effort:
            kwargs["reasoning_effort"] = self.reasoning_effort
        stream = await self._client.chat.completions.create(**kwargs)

        text: list[str] = []
        pending: dict[int, dict[str, str]] = {}
        usage: dict[str, int] = {}
        async for chunk in stream:
            if chunk.usage is not None:
                usage = {
                    "input_tokens": chunk.usage.prompt_tokens or 0,
                    "output_tokens": chunk.usage.completion_tokens or 0,
                }
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                text.append(delta.content)
                callbacks.on_text(delta.content)
            for tc in delta.tool_calls or []:
                entry = pending.get(tc.index)
                if entry is None:
                    entry = {"id": tc.id or f"call_{tc.index}", "name": "", "json": ""}
                    pending[tc.index] = entry
                elif tc.id:
                    entry["id"] = tc.id
                if tc.function is None:
                    continue
                if tc.function.name:
                    started = bool(entry["name"])
                    entry["name"] += tc.function.name
                    if not started:
                        callbacks.on_tool_start(tc.index, entry["name"])
                if tc.function.arguments:
                    entry["json"] += tc.function.arguments
                    callbacks.on_tool_delta(tc.index, tc.function.arguments)

        calls = [
            ToolCall(id=p["id"], name=p["name"], args=parse_tool_input(p["json"], p["name"]))
            for _, p in sorted(pending.items())
        ]
        return ModelTurn(text="".join(text), tool_calls=calls, usage=usage)

    async def aclose(self) -> None:
        await self._client.close()
