import abc
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ExternalToolConfig(BaseModel):
    """Connection settings for an external tool server, passed through untouched."""

    model_config = ConfigDict(extra="allow")

    name: str
    url: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)


class ExternalToolResult(BaseModel):
    content: list[dict[str, Any]] = Field(default_factory=list)
    is_error: bool = False


class ExternalToolExecutor(abc.ABC):
    """Tools served by something other than the sandbox (e.g. an MCP server)."""

    @abc.abstractmethod
    async def list_tools(self) -> list[dict[str, Any]]:
        """Return tool definitions shaped like ``{"name", "description", "input_schema"}``."""

    @abc.abstractmethod
    def has_tool(self, name: str) -> bool: ...

    @abc.abstractmethod
    async def call_tool(self, name: str, args: dict[str, Any]) -> ExternalToolResult: ...

    async def aclose(self) -> None:
        pass


def format_external_result(result: ExternalToolResult) -> str:
    parts: list[str] = []
    for item in result.content:
        kind = item.get("type")
        if kind == "text" and item.get("text"):
            parts.append(item["text"])
        elif kind == "image" and item.get("data"):
            parts.append(f"[Image: {item.get('mimeType') or 'image/png'}]")
        elif kind == "resource":
            parts.append(f"[Resource: {item.get('mimeType') or 'unknown'}]")
    return "\n".join(parts) or "Tool executed successfully"
