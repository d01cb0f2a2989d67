from typing import Any


class AgentCallbacks:
    """Hooks fired while a generation runs. Every method is optional.

    Screenshot and question requests are escape hatches to the client; the
    matching tools report themselves unavailable unless the flags are set.
    """

    can_capture_screenshots: bool = False
    can_ask_questions: bool = False

    def on_text(self, text: str) -> None:
        pass

    def on_tool_start(self, index: int, name: str) -> None:
        pass

    def on_tool_delta(self, index: int, delta: str) -> None:
        pass

    def on_tool_call(self, index: int, name: str, args: dict[str, Any]) -> None:
        pass

    def on_tool_result(self, call_id: str, content: str, name: str, is_error: bool) -> None:
        pass

    def on_token_usage(self, usage: dict[str, int]) -> None:
        pass

    def on_file_written(self, path: str, content: str) -> None:
        pass

    def on_screenshot_request(self, request_id: str) -> None:
        pass

    def on_question_request(
        self, request_id: str, questions: list[dict[str, Any]], context: str | None
    ) -> None:
        pass


class EventCollector(AgentCallbacks):
    """Buffers callback activity as event dicts for a streaming consumer to drain."""

    def __init__(self, screenshots: bool = False, questions: bool = False):
        self.events: list[dict[str, Any]] = []
        self.can_capture_screenshots = screenshots
        self.can_ask_questions = questions

    def drain(self) -> list[dict[str, Any]]:
        drained, self.events = self.events, []
        return drained

    def on_text(self, text: str) -> None:
        self.events.append({"type": "text", "content": text})

    def on_tool_start(self, index: int, name: str) -> None:
        self.events.append({"type": "tool_start", "index": index, "name": name})

    def on_tool_delta(self, index: int, delta: str) -> None:
        self.events.append({"type": "tool_delta", "index": index, "delta": delta})

    def on_tool_call(self, index: int, name: str, args: dict[str, Any]) -> None:
        self.events.append({"type": "tool_call", "index": index, "name": name, "args": args})

    def on_tool_result(self, call_id: str, content: str, name: str, is_error: bool) -> None:
        self.events.append(
            {
                "type": "tool_result",
                "tool_use_id": call_id,
                "name": name,
                "content": content,
                "is_error": is_error,
            }
        )

    def on_token_usage(self, usage: dict[str, int]) -> None:
        self.events.append({"type": "usage", "usage": usage})

    def on_file_written(self, path: str, content: str) -> None:
        self.events.append({"type": "file_written", "path": path, "content": content})

    def on_screenshot_request(self, request_id: str) -> None:
        self.events.append({"type": "screenshot_request", "requestId": request_id})

    def on_question_request(
        self, request_id: str, questions: list[dict[str, Any]], context: str | None
    ) -> None:
        self.events.append(
            {
                "type": "question_request",
                "requestId": request_id,
                "questions": questions,
                "context": context,
            }
        )
