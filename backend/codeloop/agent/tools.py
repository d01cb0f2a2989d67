"""Tool catalog exposed to the model.

Each tool is a pydantic model of its arguments. The JSON schema sent to the
model is generated from that model, so the advertised contract and the
validation applied by the dispatcher cannot drift apart.
"""

from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, WithJsonSchema


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tool_name: ClassVar[str]
    description: ClassVar[str]
    # Required fields that also reject ""; a blank value usually means truncation.
    non_empty: ClassVar[tuple[str, ...]] = ()


class WriteFileArgs(ToolArgs):
    tool_name = "write_file"
    description = "Creates or updates a file in the project."
    non_empty = ("path", "content")

    path: str = Field(
        description='The full path to the file, relative to the project root (e.g., "src/app/app.component.ts").'
    )
    content: str = Field(description="The full content of the file.")


_FILES_SCHEMA = {
    "type": "array",
    "description": "Files to create or overwrite.",
    "items": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path relative to the project root."},
            "content": {"type": "string", "description": "The full content of the file."},
        },
        "required": ["path", "content"],
    },
}


class WriteFilesArgs(ToolArgs):
    tool_name = "write_files"
    description = (
        "Creates or updates several files in one call. Prefer this over repeated "
        "write_file calls for files that do not depend on each other."
    )
    non_empty = ("files",)

    # Models sometimes send the array as a JSON string.
    files: Annotated[list[Any] | str, WithJsonSchema(_FILES_SCHEMA)]


class ReadFileArgs(ToolArgs):
    tool_name = "read_file"
    description = "Reads the content of a file from the project to understand its context before editing."
    non_empty = ("path",)

    path: str = Field(description="The path to the file to read.")


class ReadFilesArgs(ToolArgs):
    tool_name = "read_files"
    description = "Reads several files at once. Each file is returned in its own section."
    non_empty = ("paths",)

    paths: Annotated[
        list[str] | str,
        WithJsonSchema(
            {
                "type": "array",
                "items": {"type": "string"},
                "description": "Paths of the files to read.",
            }
        ),
    ]


class EditFileArgs(ToolArgs):
    tool_name = "edit_file"
    description = (
        "Replaces one exact occurrence of old_str with new_str in a file. old_str must "
        "match the file contents exactly, including whitespace, and must be unique."
    )
    non_empty = ("path", "old_str")

    path: str = Field(description="The path to the file to edit.")
    old_str: str = Field(description="The exact text to replace.")
    new_str: str = Field(description="The replacement text.")


class DeleteFileArgs(ToolArgs):
    tool_name = "delete_file"
    description = "Deletes a file from the project."
    non_empty = ("path",)

    path: str = Field(description="The path to the file to delete.")


class RenameFileArgs(ToolArgs):
    tool_name = "rename_file"
    description = "Moves or renames a file."
    non_empty = ("old_path", "new_path")

    old_path: str = Field(description="The current path of the file.")
    new_path: str = Field(description="The new path for the file.")


class CopyFileArgs(ToolArgs):
    tool_name = "copy_file"
    description = "Copies a file to a new path."
    non_empty = ("source_path", "destination_path")

    source_path: str = Field(description="The path of the file to copy.")
    destination_path: str = Field(description="Where to write the copy.")


class ListDirArgs(ToolArgs):
    tool_name = "list_dir"
    description = "Lists the files and folders in a directory to explore the project structure."
    non_empty = ("path",)

    path: str = Field(description="The directory path to list.")


class GlobArgs(ToolArgs):
    tool_name = "glob"
    description = 'Finds files whose paths match a glob pattern (e.g. "src/**/*.ts").'
    non_empty = ("pattern",)

    pattern: str = Field(description="The glob pattern to match.")


class GrepArgs(ToolArgs):
    tool_name = "grep"
    description = "Searches file contents with a regular expression. Returns path:line:text matches."
    non_empty = ("pattern",)

    pattern: str = Field(description="The regular expression to search for.")
    path: str = Field(default=".", description="Directory or file to search in.")
    case_sensitive: bool = Field(default=False, description="Match case exactly.")


class RunCommandArgs(ToolArgs):
    tool_name = "run_command"
    description = (
        "Execute a shell command in the project environment. Use this to run build "
        "commands, tests, or grep for information. Returns stdout, stderr and exit code."
    )
    non_empty = ("command",)

    command: str = Field(
        description="The shell command to execute (e.g. 'npm run build', 'grep -r \"Component\" src')"
    )


class TakeScreenshotArgs(ToolArgs):
    tool_name = "take_screenshot"
    description = "Captures a screenshot of the running application preview."


class QuestionOption(BaseModel):
    value: str
    label: str
    recommended: bool | None = None
    preview: str | None = None


class Question(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    text: str
    type: Literal["radio", "checkbox", "text", "color", "range", "image", "code"]
    options: list[QuestionOption] | None = None
    placeholder: str | None = None
    required: bool | None = None
    default: Any = None
    min: float | None = None
    max: float | None = None
    step: float | None = None
    unit: str | None = None
    language: str | None = None
    allow_upload: bool | None = Field(default=None, alias="allowUpload")


_QUESTIONS_SCHEMA = {
    "type": "array",
    "description": "The questions to ask.",
    "items": {
        "type": "object",
        "properties": {
            "id": {"type": "string", "description": "Unique identifier for the question."},
            "text": {"type": "string", "description": "The question text."},
            "type": {
                "type": "string",
                "enum": ["radio", "checkbox", "text", "color", "range", "image", "code"],
            },
            "options": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "value": {"type": "string"},
                        "label": {"type": "string"},
                        "recommended": {"type": "boolean"},
                        "preview": {"type": "string"},
                    },
                    "required": ["value", "label"],
                },
            },
            "placeholder": {"type": "string"},
            "required": {"type": "boolean"},
            "default": {},
            "min": {"type": "number"},
            "max": {"type": "number"},
            "step": {"type": "number"},
            "unit": {"type": "string"},
            "language": {"type": "string"},
            "allowUpload": {"type": "boolean"},
        },
        "required": ["id", "text", "type"],
    },
}


class AskUserArgs(ToolArgs):
    tool_name = "ask_user"
    description = (
        "Asks the user clarifying questions and waits for the answers. Use only when "
        "requirements are genuinely ambiguous."
    )
    non_empty = ("questions",)

    questions: Annotated[list[Question], WithJsonSchema(_QUESTIONS_SCHEMA)]
    context: str | None = Field(default=None, description="Why these questions are being asked.")


class ActivateSkillArgs(ToolArgs):
    tool_name = "activate_skill"
    description = "Activates a specialized agent skill."
    non_empty = ("name",)

    name: str = Field(description="The name of the skill to activate.")


BASE_TOOLS: list[type[ToolArgs]] = [
    WriteFileArgs,
    WriteFilesArgs,
    ReadFileArgs,
    ReadFilesArgs,
    EditFileArgs,
    DeleteFileArgs,
    RenameFileArgs,
    CopyFileArgs,
    ListDirArgs,
    GlobArgs,
    GrepArgs,
    TakeScreenshotArgs,
    AskUserArgs,
]

TOOL_ARGS: dict[str, type[ToolArgs]] = {
    model.tool_name: model for model in [*BASE_TOOLS, RunCommandArgs, ActivateSkillArgs]
}


def _strip_titles(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {
            k: _strip_titles(v)
            for k, v in schema.items()
            if not (k == "title" and isinstance(v, str))
        }
    if isinstance(schema, list):
        return [_strip_titles(v) for v in schema]
    return schema


def tool_definition(model: type[ToolArgs], description: str | None = None) -> dict[str, Any]:
    schema = _strip_titles(model.model_json_schema())
    schema.setdefault("properties", {})
    return {
        "name": model.tool_name,
        "description": description or model.description,
        "input_schema": schema,
    }


def build_tool_catalog(
    supports_exec: bool,
    skills: list[tuple[str, str]] | None = None,
    external_tools: list[dict[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    """Assemble the tool list for one run.

    ``skills`` are ``(name, description)`` pairs; ``external_tools`` already use
    the ``name``/``description``/``input_schema`` shape.
    """
    catalog = [tool_definition(model) for model in BASE_TOOLS]
    if supports_exec:
        catalog.append(tool_definition(RunCommandArgs))
    if skills:
        listing = "\n".join(f'- "{name}": {desc}' for name, desc in skills)
        definition = tool_definition(
            ActivateSkillArgs,
            f"Activates a specialized agent skill. Choose from:\n{listing}",
        )
        definition["input_schema"]["properties"]["name"]["enum"] = [n for n, _ in skills]
        catalog.append(definition)
    for tool in external_tools or []:
        catalog.append(
            {
                "name": tool["name"],
                "description": f"[MCP] {tool.get('description', '')}",
                "input_schema": tool.get("input_schema") or {"type": "object", "properties": {}},
            }
        )
    return catalog
