import json
import logging
import posixpath
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from codeloop.agent.context import AgentLoopContext
from codeloop.agent.external import format_external_result
from codeloop.agent.parsing import loads_lenient
from codeloop.agent.tools import (
    TOOL_ARGS,
    ActivateSkillArgs,
    AskUserArgs,
    CopyFileArgs,
    DeleteFileArgs,
    EditFileArgs,
    GlobArgs,
    GrepArgs,
    ListDirArgs,
    ReadFileArgs,
    ReadFilesArgs,
    RenameFileArgs,
    RunCommandArgs,
    TakeScreenshotArgs,
    ToolArgs,
    WriteFileArgs,
    WriteFilesArgs,
)
from codeloop.errors import (
    CodeloopError,
    MalformedArgumentError,
    ProtectedResourceError,
    ToolValidationError,
)
from codeloop.sandbox.base import INTERNAL_PREFIX


logger = logging.getLogger("codeloop.agent.dispatch")

PROTECTED_FILES: frozenset[str] = frozenset(
    {"package.json", "angular.json", "tsconfig.json", "tsconfig.app.json"}
)
BUILD_KEYWORD = "build"


class ToolResult(BaseModel):
    content: str
    is_error: bool = False


def missing_arguments_message(tool_name: str, missing: list[str]) -> str:
    return (
        f"Error: Tool '{tool_name}' missing required arguments: {', '.join(missing)}. "
        "Your response may have been truncated. Try breaking the task into smaller steps."
    )


def find_missing_arguments(model: type[ToolArgs], args: dict[str, Any]) -> list[str]:
    missing: list[str] = []
    for field_name, field in model.model_fields.items():
        value = args.get(field_name)
        if field.is_required() and value is None:
            missing.append(field_name)
        elif field_name in model.non_empty and value == "":
            missing.append(field_name)
    return missing


def check_deletable(path: str) -> None:
    if posixpath.basename(path) in PROTECTED_FILES:
        raise ProtectedResourceError(f"Cannot delete protected file: {path}")


def _validation_message(tool_name: str, exc: ValidationError) -> str:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}"
        for err in exc.errors()
    )
    return f"Error: Invalid arguments for tool '{tool_name}': {details}"


def build_failure_nudge(count: int, kit_name: str) -> str:
    return (
        f"\n\nBUILD FAILURE #{count}: STOP AND READ THE DOCS.\n"
        f"You have had {count} consecutive build failures with the {kit_name} "
        "component library. You MUST:\n"
        "1. Identify which components are causing errors\n"
        f"2. Read their documentation: `read_files` -> `{INTERNAL_PREFIX}components/{{ComponentName}}.md`\n"
        "3. Fix the imports, selectors, and APIs based on the docs\n"
        "Do NOT remove or replace library components with plain HTML. Do NOT guess; read the docs."
    )


class ToolDispatcher:
    """Executes one named tool call against the run's sandbox.

    Always returns a :class:`ToolResult`; failures become error results that
    the model can react to on its next turn.
    """

    def __init__(self, ctx: AgentLoopContext):
        self.ctx = ctx
        self._handlers: dict[str, Callable[[Any], Awaitable[ToolResult | str]]] = {
            WriteFileArgs.tool_name: self._write_file,
            WriteFilesArgs.tool_name: self._write_files,
            ReadFileArgs.tool_name: self._read_file,
            ReadFilesArgs.tool_name: self._read_files,
            EditFileArgs.tool_name: self._edit_file,
            DeleteFileArgs.tool_name: self._delete_file,
            RenameFileArgs.tool_name: self._rename_file,
            CopyFileArgs.tool_name: self._copy_file,
            ListDirArgs.tool_name: self._list_dir,
            GlobArgs.tool_name: self._glob,
            GrepArgs.tool_name: self._grep,
            RunCommandArgs.tool_name: self._run_command,
            TakeScreenshotArgs.tool_name: self._take_screenshot,
            AskUserArgs.tool_name: self._ask_user,
            ActivateSkillArgs.tool_name: self._activate_skill,
        }

    async def dispatch(self, name: str, args: dict[str, Any]) -> ToolResult:
        external = self.ctx.external_tools
        if external is not None and external.has_tool(name):
            return await self._call_external(name, args)

        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult(content=f"Error: Unknown tool {name}", is_error=True)

        model = TOOL_ARGS[name]
        missing = find_missing_arguments(model, args)
        if missing:
            logger.warning("tool %s missing arguments: %s", name, missing)
            return ToolResult(content=missing_arguments_message(name, missing), is_error=True)
        try:
            parsed = model.model_validate(args)
        except ValidationError as e:
            return ToolResult(content=_validation_message(name, e), is_error=True)

        try:
            result = await handler(parsed)
        except CodeloopError as e:
            return ToolResult(content=f"Error: {e}", is_error=True)
        except Exception as e:
            logger.exception("tool %s failed", name)
            return ToolResult(content=f"Error: {e}", is_error=True)
        return result if isinstance(result, ToolResult) else ToolResult(content=result)

    async def _call_external(self, name: str, args: dict[str, Any]) -> ToolResult:
        try:
            result = await self.ctx.external_tools.call_tool(name, args)
        except Exception as e:
            logger.warning("external tool %s failed: %s", name, e)
            return ToolResult(content=f"MCP tool error: {e}", is_error=True)
        return ToolResult(content=format_external_result(result), is_error=result.is_error)

    async def _store(self, path: str, content: str) -> None:
        await self.ctx.fs.write_file(path, content)
        self.ctx.callbacks.on_file_written(path, content)
        self.ctx.has_written_files = True

    async def _write_file(self, args: WriteFileArgs) -> str:
        await self._store(args.path, args.content)
        return "File created successfully."

    async def _write_files(self, args: WriteFilesArgs) -> ToolResult:
        files: Any = args.files
        if isinstance(files, str):
            try:
                files = loads_lenient(files)
            except MalformedArgumentError:
                files = None
        if not isinstance(files, list):
            return ToolResult(
                content=(
                    "Error: No files array provided. Your JSON may have been truncated. "
                    "Try writing fewer files per call, or use write_file for individual files."
                ),
                is_error=True,
            )

        written = 0
        skipped: list[str] = []
        for entry in files:
            path = entry.get("path") if isinstance(entry, dict) else None
            content = entry.get("content") if isinstance(entry, dict) else None
            if not path or not isinstance(content, str) or not content:
                skipped.append(path if isinstance(path, str) and path else "unknown")
                continue
            await self._store(path, content)
            written += 1

        if skipped:
            logger.warning("write_files skipped %d entries: %s", len(skipped), skipped)
            return ToolResult(
                content=(
                    f"{written} of {len(files)} files written. Skipped {len(skipped)} files "
                    f"with missing path or content (possible truncation): {', '.join(skipped)}"
                )
            )
        return ToolResult(content=f"{written} of {len(files)} files written successfully.")

    async def _read_file(self, args: ReadFileArgs) -> str:
        return await self.ctx.fs.read_file(args.path)

    async def _read_files(self, args: ReadFilesArgs) -> ToolResult:
        paths: Any = args.paths
        if isinstance(paths, str):
            try:
                paths = loads_lenient(paths)
            except MalformedArgumentError:
                paths = None
        if not isinstance(paths, list):
            return ToolResult(
                content=(
                    "Error: Tool 'read_files' requires 'paths' to be an array. "
                    "Your response may have been truncated."
                ),
                is_error=True,
            )
        sections: list[str] = []
        for path in paths:
            try:
                content = await self.ctx.fs.read_file(str(path))
                sections.append(f"--- {path} ---\n{content}")
            except Exception as e:
                sections.append(f"--- {path} ---\nError: {e}")
        return ToolResult(content="\n\n".join(sections))

    async def _edit_file(self, args: EditFileArgs) -> str:
        fs = self.ctx.fs
        await fs.edit_file(args.path, args.old_str, args.new_str)
        self.ctx.callbacks.on_file_written(args.path, await fs.read_file(args.path))
        self.ctx.has_written_files = True
        return "File edited successfully."

    async def _delete_file(self, args: DeleteFileArgs) -> str:
        check_deletable(args.path)
        await self.ctx.fs.delete_file(args.path)
        self.ctx.has_written_files = True
        return f"File deleted: {args.path}"

    async def _rename_file(self, args: RenameFileArgs) -> str:
        fs = self.ctx.fs
        check_deletable(args.old_path)
        if fs.canonical_path(args.old_path) == fs.canonical_path(args.new_path):
            raise ToolValidationError(
                f"Cannot rename {args.old_path} to {args.new_path}: both refer to the same file"
            )
        content = await fs.read_file(args.old_path)
        await self._store(args.new_path, content)
        await fs.delete_file(args.old_path)
        return f"File renamed from {args.old_path} to {args.new_path}"

    async def _copy_file(self, args: CopyFileArgs) -> str:
        content = await self.ctx.fs.read_file(args.source_path)
        await self._store(args.destination_path, content)
        return f"File copied from {args.source_path} to {args.destination_path}"

    async def _list_dir(self, args: ListDirArgs) -> str:
        items = await self.ctx.fs.list_dir(args.path)
        return "\n".join(items) if items else "Directory is empty or not found."

    async def _glob(self, args: GlobArgs) -> str:
        matches = await self.ctx.fs.glob(args.pattern)
        return "\n".join(matches) if matches else "No files matched the pattern."

    async def _grep(self, args: GrepArgs) -> str:
        matches = await self.ctx.fs.grep(args.pattern, args.path, args.case_sensitive)
        return "\n".join(matches) if matches else "No matches found."

    async def _run_command(self, args: RunCommandArgs) -> ToolResult:
        ctx = self.ctx
        result = await ctx.fs.exec(args.command)
        content = (
            f"Exit Code: {result.exit_code}\n\nSTDOUT:\n{result.stdout}"
            f"\n\nSTDERR:\n{result.stderr}"
        )
        failed = result.exit_code != 0
        if BUILD_KEYWORD in args.command:
            ctx.has_run_build = True
            if failed:
                ctx.failed_build_count += 1
                logger.info("build failed (%d in a row)", ctx.failed_build_count)
                if ctx.active_kit_name and ctx.failed_build_count >= 2:
                    content += build_failure_nudge(ctx.failed_build_count, ctx.active_kit_name)
            else:
                ctx.failed_build_count = 0
        return ToolResult(content=content, is_error=failed)

    async def _take_screenshot(self, args: TakeScreenshotArgs) -> ToolResult:
        ctx = self.ctx
        if ctx.screenshots is None or not ctx.callbacks.can_capture_screenshots:
            return ToolResult(
                content="Screenshot capture is not available in this environment.",
                is_error=True,
            )
        try:
            image = await ctx.screenshots.request_screenshot(ctx.callbacks.on_screenshot_request)
        except CodeloopError as e:
            return ToolResult(content=f"Failed to capture screenshot: {e}", is_error=True)
        return ToolResult(content=f"[SCREENSHOT:{image}]")

    async def _ask_user(self, args: AskUserArgs) -> ToolResult:
        ctx = self.ctx
        if ctx.questions is None or not ctx.callbacks.can_ask_questions:
            return ToolResult(
                content="Question requests are not available in this environment.",
                is_error=True,
            )
        questions = [q.model_dump(by_alias=True, exclude_none=True) for q in args.questions]
        try:
            answers = await ctx.questions.request_answers(
                questions, args.context, ctx.callbacks.on_question_request
            )
        except CodeloopError as e:
            return ToolResult(content=f"Question request failed: {e}", is_error=True)
        return ToolResult(
            content=f"User provided the following answers:\n{json.dumps(answers, indent=2)}"
        )

    async def _activate_skill(self, args: ActivateSkillArgs) -> ToolResult:
        skill = self.ctx.skills.get(args.name)
        if skill is None:
            return ToolResult(content=f"Error: Skill '{args.name}' not found.", is_error=True)
        return ToolResult(
            content=f'<activated_skill name="{skill.name}">\n{skill.instructions}\n</activated_skill>'
        )
