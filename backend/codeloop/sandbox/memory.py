from codeloop.errors import NotFoundError
from codeloop.files import FileTree, add_file, mark_deleted
from codeloop.sandbox.base import (
    INTERNAL_PREFIX,
    FileSystem,
    compile_glob,
    compile_grep,
    grep_content,
    normalize_dir,
)


class MemoryFileSystem(FileSystem):
    """Sandbox backed by a flat ``{path: content}`` map.

    Reads see the current state; the diff only holds what this run touched.
    """

    def __init__(self, files: dict[str, str] | None = None):
        self._files: dict[str, str] = dict(files or {})
        self._diff: FileTree = {}

    @staticmethod
    def _key(path: str) -> str:
        return path[2:] if path.startswith("./") else path.lstrip("/")

    def canonical_path(self, path: str) -> str:
        return self._key(path)

    @property
    def files(self) -> dict[str, str]:
        return dict(self._files)

    async def read_file(self, path: str) -> str:
        key = self._key(path)
        if key not in self._files:
            raise NotFoundError(f"File not found: {path}")
        return self._files[key]

    async def write_file(self, path: str, content: str) -> None:
        key = self._key(path)
        self._files[key] = content
        if not key.startswith(INTERNAL_PREFIX):
            add_file(self._diff, key, content)

    async def delete_file(self, path: str) -> None:
        key = self._key(path)
        if key not in self._files:
            raise NotFoundError(f"File not found: {path}")
        del self._files[key]
        mark_deleted(self._diff, key)

    async def list_dir(self, path: str) -> list[str]:
        prefix = normalize_dir(path)
        entries: set[str] = set()
        for key in self._files:
            if not key.startswith(prefix):
                continue
            relative = key[len(prefix) :]
            head, sep, _ = relative.partition("/")
            entries.add(f"{head}/" if sep else head)
        return sorted(entries)

    async def glob(self, pattern: str) -> list[str]:
        regex = compile_glob(pattern)
        return sorted(p for p in self._files if regex.match(p))

    async def grep(
        self, pattern: str, path: str = ".", case_sensitive: bool = False
    ) -> list[str]:
        regex = compile_grep(pattern, case_sensitive)
        scope = self._key(path) if path not in ("", ".", "./") else ""
        results: list[str] = []
        for key in sorted(self._files):
            if scope and key != scope and not key.startswith(normalize_dir(scope)):
                continue
            results.extend(grep_content(key, self._files[key], regex))
        return results

    def diff(self) -> FileTree:
        return self._diff
