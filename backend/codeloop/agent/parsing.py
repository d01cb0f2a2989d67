import json
import logging
import re
from typing import Any

from codeloop.errors import MalformedArgumentError


logger = logging.getLogger("codeloop.agent.parsing")


def repair_json(raw: str) -> str:
    """Best-effort fix for JSON cut off mid-stream or written loosely by a model."""
    if not raw or not raw.strip():
        return raw
    s = raw.strip()
    if "'" in s and '"' not in s:
        s = s.replace("'", '"')

    closers: list[str] = []
    in_string = False
    escaped = False
    end = len(s)
    for i, ch in enumerate(s):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            closers.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if closers and closers[-1] == ch:
                closers.pop()
            if not closers:
                # anything after the outermost value is garbage
                end = i + 1
                break

    s = s[:end]
    if in_string:
        if escaped:
            s = s[:-1]
        s += '"'
    s = re.sub(r"[,:\s]+$", "", s)
    s += "".join(reversed(closers))
    s = re.sub(r",\s*([}\]])", r"\1", s)
    return s


def loads_lenient(raw: str) -> Any:
    """Parse JSON strictly, then after repair; raise if both fail."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(repair_json(raw))
    except json.JSONDecodeError as e:
        raise MalformedArgumentError(f"Could not parse JSON arguments: {e}") from None


def parse_tool_input(raw: str | None, tool_name: str = "") -> dict[str, Any]:
    """Turn streamed tool-call arguments into a dict.

    Empty or unrecoverable input degrades to ``{}`` so the dispatcher can report
    the missing arguments back to the model.
    """
    if raw is None or not raw.strip():
        logger.warning("tool %s received empty input", tool_name or "?")
        return {}
    try:
        parsed = loads_lenient(raw)
    except MalformedArgumentError:
        logger.error(
            "tool %s input could not be parsed (%d chars): %s",
            tool_name or "?",
            len(raw),
            raw[:200],
        )
        return {}
    if not isinstance(parsed, dict):
        logger.warning("tool %s input is not an object", tool_name or "?")
        return {}
    return parsed
