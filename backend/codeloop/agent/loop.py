import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field

from codeloop.agent.callbacks import AgentCallbacks
from codeloop.agent.context import AgentLoopContext, GenerationRequest
from codeloop.agent.dispatch import BUILD_KEYWORD, ToolDispatcher
from codeloop.agent.external import ExternalToolConfig, ExternalToolExecutor
from codeloop.agent.interactions import QuestionBroker, ScreenshotBroker
from codeloop.agent.prompt import (
    attachment_blocks,
    build_system_prompt,
    build_user_text,
    screenshot_content,
)
from codeloop.agent.pruning import prune_messages
from codeloop.agent.skills import SkillRegistry
from codeloop.agent.tools import RunCommandArgs, build_tool_catalog
from codeloop.config import Settings
from codeloop.files import dump_tree, flatten_tree, parse_tree
from codeloop.models.base import ModelClient, ModelTurn, ToolCall
from codeloop.sandbox.base import FileSystem
from codeloop.sandbox.memory import MemoryFileSystem


logger = logging.getLogger("codeloop.agent")

CONTINUE_FIX_MESSAGE = "Continue fixing the build errors."
DEV_SERVER_NUDGE = (
    'cp src/main.ts src/main.ts.bak && echo "// nudge" >> src/main.ts '
    "&& sleep 2 && mv src/main.ts.bak src/main.ts"
)
BUILD_OUTPUT_LIMIT = 4000

ExternalToolsFactory = Callable[[list[ExternalToolConfig]], Awaitable[ExternalToolExecutor]]


def build_fix_message(build_command: str, output: str) -> str:
    return (
        "The build failed with the following errors. Fix ALL errors and then run "
        f"`{build_command}` again to verify.\n\n```\n{output[:BUILD_OUTPUT_LIMIT]}\n```"
    )


class GenerationResult(BaseModel):
    files: dict[str, Any] = Field(default_factory=dict)
    explanation: str = ""
    turns: int = 0
    usage: dict[str, int] = Field(default_factory=dict)
    error: str | None = None


class AgentLoop:
    """Drives one generation: model turns, tool dispatch and build verification.

    ``run`` does not raise once the first turn has started; a failing model call
    ends the run with whatever diff and explanation exist so far.
    """

    def __init__(
        self,
        model_client: ModelClient,
        settings: Settings | None = None,
        skills: SkillRegistry | None = None,
        screenshots: ScreenshotBroker | None = None,
        questions: QuestionBroker | None = None,
        external_tools_factory: ExternalToolsFactory | None = None,
    ):
        self.client = model_client
        self.settings = settings or Settings()
        self.skills = skills or SkillRegistry()
        self.screenshots = screenshots
        self.questions = questions
        self.external_tools_factory = external_tools_factory

    async def run(
        self,
        request: GenerationRequest,
        callbacks: AgentCallbacks | None = None,
        fs: FileSystem | None = None,
    ) -> GenerationResult:
        files = flatten_tree(parse_tree(request.previous_files))
        if fs is None:
            fs = MemoryFileSystem(files)
        ctx = AgentLoopContext(
            fs=fs,
            callbacks=callbacks or AgentCallbacks(),
            skills=self.skills,
            screenshots=self.screenshots,
            questions=self.questions,
            active_kit_name=request.active_kit.name if request.active_kit else None,
            external_tools=await self._open_external_tools(request),
        )
        error: str | None = None
        try:
            await self._run(request, ctx, files)
        except Exception as e:
            logger.exception("generation failed after %d turns", ctx.turns)
            error = str(e)
        finally:
            if ctx.external_tools is not None:
                try:
                    await ctx.external_tools.aclose()
                except Exception:
                    logger.warning("failed to close external tools", exc_info=True)
        return GenerationResult(
            files=dump_tree(fs.diff()),
            explanation=ctx.full_explanation,
            turns=ctx.turns,
            usage=dict(ctx.token_usage),
            error=error,
        )

    async def _open_external_tools(
        self, request: GenerationRequest
    ) -> ExternalToolExecutor | None:
        if not request.mcp_configs:
            return None
        if self.external_tools_factory is None:
            logger.warning(
                "ignoring %d external tool configs: no executor factory",
                len(request.mcp_configs),
            )
            return None
        try:
            return await self.external_tools_factory(list(request.mcp_configs))
        except Exception:
            logger.exception("failed to initialize external tools")
            return None

    async def _run(
        self, request: GenerationRequest, ctx: AgentLoopContext, files: dict[str, str]
    ) -> None:
        fs = ctx.fs
        external_defs: list[dict[str, Any]] = []
        if ctx.external_tools is not None:
            try:
                external_defs = await ctx.external_tools.list_tools()
                logger.info("external tools available: %d", len(external_defs))
            except Exception:
                logger.exception("failed to list external tools")
        tools = build_tool_catalog(
            fs.supports_exec,
            [(s.name, s.description) for s in ctx.skills.list()],
            external_defs,
        )
        system = build_system_prompt(request)
        user_text = await build_user_text(request, fs, files, ctx.skills)
        messages: list[dict[str, Any]] = [
            {
                "role": "user",
                "content": [{"type": "text", "text": user_text}, *attachment_blocks(request.images)],
            }
        ]

        max_turns = self.settings.max_turns_exec if fs.supports_exec else self.settings.max_turns
        dispatcher = ToolDispatcher(ctx)
        while ctx.turns < max_turns:
            turn = await self._exchange(system, messages, tools, ctx)
            if not turn.tool_calls:
                await self._verify_build(system, messages, tools, ctx, dispatcher)
                break
            results, _ = await self._dispatch_all(turn.tool_calls, dispatcher, ctx)
            messages.append({"role": "user", "content": results})
        else:
            logger.warning("turn limit reached (%d)", max_turns)
        logger.info(
            "generation finished turns=%d written=%s build=%s",
            ctx.turns,
            ctx.has_written_files,
            ctx.has_run_build,
        )

    async def _exchange(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        ctx: AgentLoopContext,
    ) -> ModelTurn:
        prune_messages(messages, self.settings.keep_recent)
        ctx.turns += 1
        turn = await self.client.send(system, messages, tools, ctx.callbacks)
        content = turn.assistant_content()
        if content:
            messages.append({"role": "assistant", "content": content})
        ctx.full_explanation += turn.text
        if turn.usage:
            for key, value in turn.usage.items():
                ctx.token_usage[key] = ctx.token_usage.get(key, 0) + value
            ctx.callbacks.on_token_usage(dict(ctx.token_usage))
        return turn

    async def _dispatch_all(
        self, calls: list[ToolCall], dispatcher: ToolDispatcher, ctx: AgentLoopContext
    ) -> tuple[list[dict[str, Any]], bool]:
        """Run calls in order; returns tool_result blocks and whether a build succeeded."""
        results: list[dict[str, Any]] = []
        build_succeeded = False
        for index, call in enumerate(calls):
            ctx.callbacks.on_tool_call(index, call.name, call.args)
            result = await dispatcher.dispatch(call.name, call.args)
            ctx.callbacks.on_tool_result(call.id, result.content, call.name, result.is_error)
            results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": screenshot_content(result.content) or result.content,
                    "is_error": result.is_error,
                }
            )
            command = call.args.get("command")
            if (
                call.name == RunCommandArgs.tool_name
                and isinstance(command, str)
                and BUILD_KEYWORD in command
                and not result.is_error
            ):
                build_succeeded = True
        return results, build_succeeded

    async def _verify_build(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        ctx: AgentLoopContext,
        dispatcher: ToolDispatcher,
    ) -> None:
        """Run the build once if the model stopped without doing so, then fix failures."""
        fs = ctx.fs
        callbacks = ctx.callbacks
        if (
            fs.supports_exec
            and ctx.has_written_files
            and not ctx.has_run_build
            and not ctx.build_nudge_sent
        ):
            ctx.build_nudge_sent = True
            command = self.settings.build_command
            callbacks.on_text("\n\nVerifying build...\n")
            build = await fs.exec(command)
            logger.info("auto build exit_code=%s", build.exit_code)
            if build.exit_code != 0:
                callbacks.on_text("Build failed. Fixing errors...\n")
                message = build_fix_message(command, f"{build.stderr}\n{build.stdout}")
                pending: list[dict[str, Any]] = []
                for fix_turn in range(self.settings.fix_turns):
                    messages.append(
                        {"role": "user", "content": [*pending, {"type": "text", "text": message}]}
                    )
                    turn = await self._exchange(system, messages, tools, ctx)
                    if not turn.tool_calls:
                        break
                    pending, build_succeeded = await self._dispatch_all(
                        turn.tool_calls, dispatcher, ctx
                    )
                    if build_succeeded:
                        logger.info("build fixed on fix turn %d", fix_turn)
                        ctx.has_run_build = True
                        break
                    message = CONTINUE_FIX_MESSAGE
            else:
                callbacks.on_text("Build successful.\n")
                ctx.has_run_build = True

        if fs.supports_exec and ctx.has_written_files and await fs.exists("src/main.ts"):
            try:
                await fs.exec(DEV_SERVER_NUDGE)
            except Exception:
                logger.debug("dev server nudge failed", exc_info=True)


async def generate(
    request: GenerationRequest,
    model_client: ModelClient,
    settings: Settings | None = None,
    callbacks: AgentCallbacks | None = None,
    fs: FileSystem | None = None,
    **loop_options: Any,
) -> GenerationResult:
    """Run one generation and release the model client afterwards."""
    try:
        return await AgentLoop(model_client, settings, **loop_options).run(request, callbacks, fs)
    finally:
        await model_client.aclose()
