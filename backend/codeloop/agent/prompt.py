import base64
import binascii
import logging
import re
from typing import Any

from codeloop.agent.context import GenerationRequest, Kit
from codeloop.agent.skills import SkillRegistry
from codeloop.files import tree_summary
from codeloop.sandbox.base import INTERNAL_PREFIX, FileSystem


logger = logging.getLogger("codeloop.agent.prompt")

SYSTEM_PROMPT = (
    "You are an expert software engineer working inside a project sandbox. "
    "Use the provided tools to read, create and edit files. Read a file before "
    "editing it. Batch independent tool calls in a single response. Keep "
    "exploration short: do not spend more than 2-3 turns reading/exploring. "
    "When run_command is available, run the build as your final step and fix "
    "every error it reports. Finish with a short explanation of what you changed."
)

KIT_EXPLORATION_OVERRIDE = (
    "However, when using a component library, you MUST spend turns reading component "
    f"documentation files (`{INTERNAL_PREFIX}components/*.md`) before writing code."
)

PLAN_MODE_TEXT = (
    "\n\n[PLAN MODE] Before writing any code, use the ask_user tool to gather "
    "requirements. Ask about:\n"
    "- Styling preferences (colors, fonts, layout)\n"
    "- Feature scope and priorities\n"
    "- Data sources and formats\n"
    "- Any ambiguous aspects of the request\n"
    "Only proceed with implementation after receiving the user's answers."
)

IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/webp", "image/gif"})

_DATA_URI = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


def build_system_prompt(request: GenerationRequest) -> str:
    kit = request.active_kit
    prompt = (kit.base_system_prompt if kit else None) or request.system_prompt or SYSTEM_PROMPT
    if kit:
        prompt = prompt.replace(
            "do not spend more than 2-3 turns reading/exploring.", KIT_EXPLORATION_OVERRIDE
        )
    return prompt


def _kit_section(kit: Kit) -> str:
    section = f"\n\n--- Component Library: {kit.name} ---\n{kit.catalog}"
    section += (
        "\n\nMANDATORY: Component documentation (read before coding).\n"
        f"This project uses the {kit.name} component library.\n"
        f"1. Read `{INTERNAL_PREFIX}components/README.md`, then the docs for every "
        f"component you plan to use: `read_files` -> `{INTERNAL_PREFIX}components/{{ComponentName}}.md`.\n"
        "2. Only use components whose docs you have read. Never guess import paths, "
        "export names, selectors or APIs.\n"
        "3. Fix build errors by reading docs, never by replacing library components "
        "with plain HTML.\n"
    )
    if kit.system_prompt:
        section += f"\n--- Kit Instructions ---\n{kit.system_prompt}\n"
    return section


async def seed_kit_docs(fs: FileSystem, kit: Kit) -> int:
    """Write kit documentation into the sandbox, keeping files that already exist."""
    written = 0
    for path, content in kit.doc_files.items():
        if await fs.exists(path):
            continue
        await fs.write_file(path, content)
        written += 1
    return written


async def build_user_text(
    request: GenerationRequest,
    fs: FileSystem,
    files: dict[str, str],
    skills: SkillRegistry,
) -> str:
    text = request.prompt

    if request.forced_skill:
        skill = skills.get(request.forced_skill)
        if skill is not None:
            text += (
                f"\n\n[SYSTEM INJECTION] The user has explicitly enabled the '{skill.name}' "
                f"skill. You MUST follow these instructions:\n{skill.instructions}"
            )
        else:
            logger.warning("forced skill %s is not registered", request.forced_skill)

    if request.previous_files:
        text += f"\n\n--- Current File Structure ---\n{tree_summary(files)}"

    if request.open_files:
        text += "\n\n--- Explicit Context (Files the user is looking at) ---\n"
        for path, content in request.open_files.items():
            text += f'<file path="{path}">\n{content}\n</file>\n'

    if request.plan_mode:
        text += PLAN_MODE_TEXT

    kit = request.active_kit
    if kit is not None:
        seeded = await seed_kit_docs(fs, kit)
        logger.info("kit %s: seeded %d doc files", kit.name, seeded)
        if kit.catalog:
            text += _kit_section(kit)

    return text


def attachment_blocks(images: list[str]) -> list[dict[str, Any]]:
    """Turn data-URI attachments into content blocks; unknown types are dropped."""
    blocks: list[dict[str, Any]] = []
    for uri in images:
        match = _DATA_URI.match(uri)
        if not match:
            logger.warning("ignoring attachment that is not a base64 data URI")
            continue
        mime, data = match.group(1), match.group(2)
        if mime in IMAGE_MIME_TYPES:
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": mime, "data": data},
                }
            )
        elif mime.startswith("text/") or mime == "application/json":
            try:
                decoded = base64.b64decode(data).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                logger.warning("failed to decode %s attachment", mime)
                continue
            blocks.append(
                {"type": "text", "text": f"\n[Attached File Content ({mime})]:\n{decoded}\n"}
            )
    return blocks


def screenshot_content(marker: str) -> list[dict[str, Any]] | None:
    """Expand a ``[SCREENSHOT:<data>]`` tool result into image content."""
    if not (marker.startswith("[SCREENSHOT:") and marker.endswith("]")):
        return None
    data = marker[len("[SCREENSHOT:") : -1]
    mime = "image/png"
    match = _DATA_URI.match(data)
    if match:
        mime, data = match.group(1), match.group(2)
    return [
        {"type": "text", "text": "Screenshot captured."},
        {"type": "image", "source": {"type": "base64", "media_type": mime, "data": data}},
    ]
