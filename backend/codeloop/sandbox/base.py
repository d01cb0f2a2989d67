import abc
import logging
import re

from pydantic import BaseModel

from codeloop.errors import AmbiguousMatchError, CommandsUnsupportedError, NotFoundError
from codeloop.files import FileTree


logger = logging.getLogger("codeloop.sandbox")


EXCLUDED_DIRS: frozenset[str] = frozenset(
    {"node_modules", ".git", ".angular", "dist", ".cache", "tmp", ".nx"}
)
EXCLUDED_FILES: frozenset[str] = frozenset({".DS_Store"})

# Files written under this prefix are kept out of diffs (kit docs, scratch notes).
INTERNAL_PREFIX = ".codeloop/"


class ExecResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


def edit_hint(content: str, old_str: str) -> str:
    """Describe where the first line of a failed ``old_str`` lives, if anywhere."""
    first_line = old_str.split("\n")[0].strip()
    lines = content.split("\n")
    idx = next((i for i, line in enumerate(lines) if first_line in line), -1)
    if idx >= 0:
        nearby = "\n".join(lines[max(0, idx - 1) : min(len(lines), idx + 3)])
        return (
            f'\nThe first line of old_str ("{first_line[:80]}") was found at line '
            f"{idx + 1}, but the full old_str doesn't match. Nearby content:\n{nearby}"
        )
    return (
        f'\nHint: The first line ("{first_line[:80]}") was not found in the file. '
        "Did you read the file first?"
    )


def apply_edit(path: str, content: str, old_str: str, new_str: str) -> str:
    """Replace the single occurrence of ``old_str``; raise on zero or many."""
    occurrences = content.count(old_str)
    if occurrences == 0:
        raise NotFoundError(f"old_str not found in {path}{edit_hint(content, old_str)}")
    if occurrences > 1:
        raise AmbiguousMatchError(f"old_str is not unique in {path}")
    return content.replace(old_str, new_str, 1)


def _translate_glob(pattern: str) -> str:
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:[^/]*/)*")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "{":
            end = pattern.find("}", i)
            if end < 0:
                out.append(re.escape(c))
            else:
                options = pattern[i + 1 : end].split(",")
                out.append("(?:" + "|".join(_translate_glob(o) for o in options) + ")")
                i = end + 1
                continue
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end < 0:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a shell glob where ``**`` spans directories and ``*`` does not."""
    if pattern.startswith("./"):
        pattern = pattern[2:]
    return re.compile(f"^{_translate_glob(pattern)}$")


def compile_grep(pattern: str, case_sensitive: bool = False) -> re.Pattern[str]:
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.compile(pattern, flags)
    except re.error:
        logger.debug("grep pattern %r is not a valid regex, matching literally", pattern)
        return re.compile(re.escape(pattern), flags)


def grep_content(path: str, content: str, regex: re.Pattern[str]) -> list[str]:
    return [
        f"{path}:{lineno}:{line.strip()}"
        for lineno, line in enumerate(content.split("\n"), start=1)
        if regex.search(line)
    ]


def normalize_dir(path: str) -> str:
    if path in ("", ".", "./", "/"):
        return ""
    path = path[2:] if path.startswith("./") else path
    return path if path.endswith("/") else f"{path}/"


class FileSystem(abc.ABC):
    """Project filesystem that an agent run reads from and writes into.

    Every mutation made through an instance is reflected in :meth:`diff`.
    """

    @abc.abstractmethod
    async def read_file(self, path: str) -> str: ...

    @abc.abstractmethod
    async def write_file(self, path: str, content: str) -> None: ...

    @abc.abstractmethod
    async def delete_file(self, path: str) -> None: ...

    @abc.abstractmethod
    async def list_dir(self, path: str) -> list[str]: ...

    @abc.abstractmethod
    async def glob(self, pattern: str) -> list[str]: ...

    @abc.abstractmethod
    async def grep(
        self, pattern: str, path: str = ".", case_sensitive: bool = False
    ) -> list[str]: ...

    @abc.abstractmethod
    def diff(self) -> FileTree: ...

    @abc.abstractmethod
    def canonical_path(self, path: str) -> str:
        """Project-relative form of ``path``; equal results name the same file."""

    async def edit_file(self, path: str, old_str: str, new_str: str) -> None:
        content = await self.read_file(path)
        await self.write_file(path, apply_edit(path, content, old_str, new_str))

    async def exists(self, path: str) -> bool:
        try:
            await self.read_file(path)
        except (NotFoundError, OSError):
            return False
        return True

    @property
    def supports_exec(self) -> bool:
        return False

    async def exec(self, command: str) -> ExecResult:
        raise CommandsUnsupportedError()
