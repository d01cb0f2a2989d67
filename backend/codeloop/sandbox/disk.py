import asyncio
import logging
import os
from typing import Protocol

from codeloop.errors import CommandsUnsupportedError, NotFoundError, PathEscapeError
from codeloop.files import FileTree, add_file, mark_deleted
from codeloop.sandbox.base import (
    EXCLUDED_DIRS,
    EXCLUDED_FILES,
    INTERNAL_PREFIX,
    ExecResult,
    FileSystem,
    compile_glob,
    compile_grep,
    grep_content,
)
from codeloop.sandbox.processes import run_shell


logger = logging.getLogger("codeloop.sandbox.disk")


class CommandExecutor(Protocol):
    async def exec(self, command: str, cwd: str) -> ExecResult: ...


def walk_project(root: str) -> list[str]:
    """Relative paths of every project file, skipping dependency and build dirs."""
    paths: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS)
        for name in sorted(filenames):
            if name in EXCLUDED_FILES:
                continue
            rel = os.path.relpath(os.path.join(dirpath, name), root)
            paths.append(rel.replace(os.sep, "/"))
    return paths


class DiskFileSystem(FileSystem):
    """Sandbox rooted at a real project directory."""

    def __init__(
        self,
        root: str,
        executor: CommandExecutor | None = None,
        allow_exec: bool = True,
        exec_timeout: float = 600.0,
    ):
        self.root = os.path.realpath(root)
        self._executor = executor
        self._allow_exec = allow_exec
        self._exec_timeout = exec_timeout
        self._diff: FileTree = {}

    def resolve(self, path: str) -> str:
        full = os.path.realpath(os.path.join(self.root, path))
        if full != self.root and not full.startswith(self.root + os.sep):
            raise PathEscapeError(path)
        return full

    def _relative(self, full: str) -> str:
        return os.path.relpath(full, self.root).replace(os.sep, "/")

    def canonical_path(self, path: str) -> str:
        return self._relative(self.resolve(path))

    async def read_file(self, path: str) -> str:
        full = self.resolve(path)
        try:
            with open(full, "r", encoding="utf-8") as fh:
                return fh.read()
        except FileNotFoundError:
            raise NotFoundError(f"File not found: {path}") from None

    async def write_file(self, path: str, content: str) -> None:
        full = self.resolve(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as fh:
            fh.write(content)
        rel = self._relative(full)
        if not rel.startswith(INTERNAL_PREFIX):
            add_file(self._diff, rel, content)

    async def delete_file(self, path: str) -> None:
        full = self.resolve(path)
        try:
            os.remove(full)
        except FileNotFoundError:
            raise NotFoundError(f"File not found: {path}") from None
        mark_deleted(self._diff, self._relative(full))

    async def list_dir(self, path: str) -> list[str]:
        full = self.resolve(path or ".")
        try:
            with os.scandir(full) as it:
                return sorted(
                    f"{entry.name}/" if entry.is_dir() else entry.name for entry in it
                )
        except OSError:
            return []

    async def glob(self, pattern: str) -> list[str]:
        regex = compile_glob(pattern)
        paths = await asyncio.to_thread(walk_project, self.root)
        return [p for p in paths if regex.match(p)]

    async def grep(
        self, pattern: str, path: str = ".", case_sensitive: bool = False
    ) -> list[str]:
        regex = compile_grep(pattern, case_sensitive)
        full = self.resolve(path or ".")
        return await asyncio.to_thread(self._grep_sync, full, regex)

    def _grep_sync(self, full: str, regex) -> list[str]:
        if os.path.isfile(full):
            candidates = [self._relative(full)]
        else:
            prefix = self._relative(full)
            candidates = [
                p if prefix == "." else f"{prefix}/{p}" for p in walk_project(full)
            ]
        results: list[str] = []
        for rel in candidates:
            try:
                with open(os.path.join(self.root, rel), "r", encoding="utf-8") as fh:
                    content = fh.read()
            except (OSError, UnicodeDecodeError):
                continue
            results.extend(grep_content(rel, content, regex))
        return results

    @property
    def supports_exec(self) -> bool:
        return self._allow_exec

    async def exec(self, command: str) -> ExecResult:
        if not self._allow_exec:
            raise CommandsUnsupportedError()
        if self._executor is not None:
            return await self._executor.exec(command, self.root)
        return await run_shell(command, self.root, timeout=self._exec_timeout)

    def diff(self) -> FileTree:
        return self._diff
