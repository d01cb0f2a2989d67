from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from codeloop.agent.callbacks import AgentCallbacks
from codeloop.agent.external import ExternalToolConfig, ExternalToolExecutor
from codeloop.agent.interactions import QuestionBroker, ScreenshotBroker
from codeloop.agent.skills import SkillRegistry
from codeloop.sandbox.base import FileSystem


class Kit(BaseModel):
    """A component library the generated project builds on.

    Attributes:
        name: Display name used in prompts and build nudges.
        catalog: Component catalog text appended to the user message.
        doc_files: Read-only documentation files seeded into the sandbox.
        system_prompt: Extra instructions appended to the system prompt.
        base_system_prompt: Replaces the default system prompt when set.
    """

    name: str
    catalog: str = ""
    doc_files: dict[str, str] = Field(default_factory=dict)
    system_prompt: str = ""
    base_system_prompt: str | None = None


class GenerationRequest(BaseModel):
    """One user instruction against a project."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    previous_files: dict[str, Any] | None = None
    open_files: dict[str, str] | None = None
    images: list[str] = Field(default_factory=list)
    model: str | None = None
    api_key: str | None = None
    provider: Literal["anthropic", "openai", "gateway"] | None = None
    user_id: str | None = None
    forced_skill: str | None = None
    active_kit: Kit | None = None
    mcp_configs: list[ExternalToolConfig] = Field(default_factory=list)
    plan_mode: bool = False
    reasoning_effort: Literal["low", "medium", "high"] | None = None
    system_prompt: str | None = None


class AgentLoopContext(BaseModel):
    """State for a single generation run.

    Attributes:
        fs: Sandbox the run reads from and writes into.
        callbacks: Observer for streaming progress.
        skills: Skills the model may activate.
        external_tools: Executor for tools served outside the sandbox.
        screenshots: Broker for client screenshot round-trips.
        questions: Broker for ask-the-user round-trips.
        active_kit_name: Name of the active component library, if any.
        full_explanation: Model text accumulated across turns.
        has_written_files: True once any file write succeeded.
        has_run_build: True once a build command was dispatched.
        build_nudge_sent: True once the automatic build check ran.
        failed_build_count: Consecutive failed build commands.
        turns: Model requests made so far, fix turns included.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    fs: FileSystem
    callbacks: AgentCallbacks = Field(default_factory=AgentCallbacks)
    skills: SkillRegistry = Field(default_factory=SkillRegistry)
    external_tools: ExternalToolExecutor | None = None
    screenshots: ScreenshotBroker | None = None
    questions: QuestionBroker | None = None
    active_kit_name: str | None = None

    full_explanation: str = ""
    has_written_files: bool = False
    has_run_build: bool = False
    build_nudge_sent: bool = False
    failed_build_count: int = 0
    turns: int = 0
    token_usage: dict[str, int] = Field(
        default_factory=lambda: {"input_tokens": 0, "output_tokens": 0}
    )
