import abc
from typing import Any

from pydantic import BaseModel, Field

from codeloop.agent.callbacks import AgentCallbacks


class ToolCall(BaseModel):
    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ModelTurn(BaseModel):
    """What the model produced for one request: text plus any tool calls."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: dict[str, int] = Field(default_factory=dict)

    def assistant_content(self) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        if self.text:
            blocks.append({"type": "text", "text": self.text})
        for call in self.tool_calls:
            blocks.append(
                {"type": "tool_use", "id": call.id, "name": call.name, "input": call.args}
            )
        return blocks


class ModelClient(abc.ABC):
    """A language model that speaks the generic tool-call protocol.

    Conversation history uses content blocks (``text``, ``image``,
    ``tool_use``, ``tool_result``); clients translate to their wire format.
    """

    model: str

    @abc.abstractmethod
    async def send(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        callbacks: AgentCallbacks,
    ) -> ModelTurn: ...

    async def aclose(self) -> None:
        pass
