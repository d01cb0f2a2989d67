import logging
from typing import Any


logger = logging.getLogger("codeloop.agent.pruning")

DEFAULT_KEEP_RECENT = 6
TRUNCATE_THRESHOLD = 2000
TRUNCATE_TARGET = 200


def clip(text: str) -> str:
    if len(text) <= TRUNCATE_THRESHOLD:
        return text
    return f"{text[:TRUNCATE_TARGET]}\n...[truncated {len(text)} chars]"


def _prune_tool_input(block: dict[str, Any]) -> None:
    tool_input = block.get("input")
    if not isinstance(tool_input, dict):
        return
    if block.get("name") == "write_files" and isinstance(tool_input.get("files"), list):
        tool_input["files"] = [
            {"path": f.get("path"), "content": "[truncated]"} if isinstance(f, dict) else f
            for f in tool_input["files"]
        ]
    elif block.get("name") == "write_file" and isinstance(tool_input.get("content"), str):
        tool_input["content"] = clip(tool_input["content"])


def _prune_block(block: dict[str, Any]) -> None:
    kind = block.get("type")
    if kind == "tool_use":
        _prune_tool_input(block)
    elif kind == "tool_result" and isinstance(block.get("content"), str):
        block["content"] = clip(block["content"])
    elif kind == "text" and isinstance(block.get("text"), str):
        block["text"] = clip(block["text"])


def prune_messages(messages: list[dict[str, Any]], keep_recent: int = DEFAULT_KEEP_RECENT) -> int:
    """Shrink bulky content in the middle of the history, in place.

    The first message (the original instruction) and the last ``keep_recent``
    messages are left alone. Turn order and every tool_use/tool_result pairing
    are preserved; only payload text gets shorter. Returns the number of
    characters saved.
    """
    if len(messages) <= keep_recent + 1:
        return 0
    before = _size(messages)
    for message in messages[1 : len(messages) - keep_recent]:
        content = message.get("content")
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict):
                    _prune_block(block)
        elif isinstance(content, str):
            message["content"] = clip(content)
    saved = before - _size(messages)
    if saved:
        logger.debug("pruned %d chars from %d messages", saved, len(messages))
    return saved


def _size(messages: list[dict[str, Any]]) -> int:
    total = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            total += len(content)
        elif isinstance(content, list):
            total += sum(len(str(block)) for block in content)
    return total
