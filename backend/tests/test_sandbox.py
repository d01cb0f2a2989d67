import asyncio
import os

import pytest

from codeloop.errors import (
    AmbiguousMatchError,
    CommandsUnsupportedError,
    NotFoundError,
    PathEscapeError,
)
from codeloop.files import dump_tree
from codeloop.sandbox import DiskFileSystem, ExecResult, MemoryFileSystem
from codeloop.sandbox.base import compile_glob, compile_grep


def run(coro):
    return asyncio.run(coro)


class TestGlob:
    def test_double_star_spans_directories(self):
        regex = compile_glob("src/**/*.ts")
        assert regex.match("src/main.ts")
        assert regex.match("src/app/deep/x.ts")
        assert not regex.match("lib/main.ts")

    def test_single_star_stays_in_directory(self):
        regex = compile_glob("*.json")
        assert regex.match("package.json")
        assert not regex.match("src/package.json")

    def test_braces_and_question_mark(self):
        regex = compile_glob("src/*.{ts,css}")
        assert regex.match("src/a.css")
        assert not regex.match("src/a.html")
        assert compile_glob("?.md").match("a.md")

    def test_invalid_grep_regex_matches_literally(self):
        regex = compile_grep("foo(")
        assert regex.search("call foo( bar")


class TestMemoryFileSystem:
    def make(self):
        return MemoryFileSystem(
            {
                "package.json": "{}",
                "src/main.ts": "import x\nconsole.log('hi')\n",
                "src/app/app.ts": "export const App = 1;\n",
            }
        )

    def test_edit_exactly_once(self):
        fs = self.make()
        run(fs.edit_file("src/main.ts", "console.log('hi')", "console.log('bye')"))
        assert run(fs.read_file("src/main.ts")) == "import x\nconsole.log('bye')\n"
        assert dump_tree(fs.diff()) == {
            "src": {"directory": {"main.ts": {"file": {"contents": "import x\nconsole.log('bye')\n"}}}}
        }

    def test_reapplying_edit_fails(self):
        fs = self.make()
        run(fs.edit_file("src/main.ts", "console.log('hi')", "console.log('bye')"))
        with pytest.raises(NotFoundError):
            run(fs.edit_file("src/main.ts", "console.log('hi')", "console.log('bye')"))

    def test_edit_not_found_hints_first_line(self):
        fs = self.make()
        with pytest.raises(NotFoundError) as exc:
            run(fs.edit_file("src/main.ts", "import x\nnot there", "y"))
        message = str(exc.value)
        assert message.startswith("old_str not found in src/main.ts")
        assert "was found at line 1" in message

    def test_edit_not_found_without_first_line(self):
        fs = self.make()
        with pytest.raises(NotFoundError) as exc:
            run(fs.edit_file("src/main.ts", "nowhere", "y"))
        assert "Did you read the file first?" in str(exc.value)

    def test_edit_ambiguous(self):
        fs = MemoryFileSystem({"a.ts": "x\nx\n"})
        with pytest.raises(AmbiguousMatchError) as exc:
            run(fs.edit_file("a.ts", "x", "y"))
        assert str(exc.value) == "old_str is not unique in a.ts"
        assert run(fs.read_file("a.ts")) == "x\nx\n"

    def test_delete_tombstones(self):
        fs = self.make()
        run(fs.delete_file("package.json"))
        assert not run(fs.exists("package.json"))
        assert dump_tree(fs.diff()) == {"package.json": {"deleted": True}}

    def test_delete_missing(self):
        with pytest.raises(NotFoundError):
            run(self.make().delete_file("nope.ts"))

    def test_internal_prefix_not_in_diff(self):
        fs = self.make()
        run(fs.write_file(".codeloop/kit/README.md", "docs"))
        assert run(fs.read_file(".codeloop/kit/README.md")) == "docs"
        assert fs.diff() == {}

    def test_list_dir(self):
        fs = self.make()
        assert run(fs.list_dir(".")) == ["package.json", "src/"]
        assert run(fs.list_dir("src")) == ["app/", "main.ts"]

    def test_glob_and_grep(self):
        fs = self.make()
        assert run(fs.glob("**/*.ts")) == ["src/app/app.ts", "src/main.ts"]
        assert run(fs.grep("CONSOLE")) == ["src/main.ts:2:console.log('hi')"]
        assert run(fs.grep("console", case_sensitive=True, path="src/app")) == []

    def test_exec_unsupported(self):
        fs = self.make()
        assert not fs.supports_exec
        with pytest.raises(CommandsUnsupportedError):
            run(fs.exec("ls"))


class FakeExecutor:
    def __init__(self):
        self.calls = []

    async def exec(self, command, cwd):
        self.calls.append((command, cwd))
        return ExecResult(stdout="ok", exit_code=0)


class TestDiskFileSystem:
    def make(self, tmp_path, **kwargs):
        root = tmp_path / "proj"
        (root / "src").mkdir(parents=True)
        (root / "src" / "main.ts").write_text("const a = 1;\n")
        (root / "node_modules" / "lib").mkdir(parents=True)
        (root / "node_modules" / "lib" / "index.ts").write_text("const a = 2;\n")
        return DiskFileSystem(str(root), **kwargs)

    def test_rejects_parent_traversal(self, tmp_path):
        fs = self.make(tmp_path)
        with pytest.raises(PathEscapeError):
            run(fs.read_file("../../etc/passwd"))

    def test_rejects_sibling_prefix(self, tmp_path):
        fs = self.make(tmp_path)
        sibling = tmp_path / "proj2"
        sibling.mkdir()
        (sibling / "secret.txt").write_text("s")
        with pytest.raises(PathEscapeError):
            run(fs.read_file("../proj2/secret.txt"))
        with pytest.raises(PathEscapeError):
            run(fs.write_file(str(sibling / "x.txt"), "x"))

    def test_write_creates_dirs_and_diff(self, tmp_path):
        fs = self.make(tmp_path)
        run(fs.write_file("src/app/new.ts", "n"))
        assert (tmp_path / "proj" / "src" / "app" / "new.ts").read_text() == "n"
        assert dump_tree(fs.diff()) == {
            "src": {"directory": {"app": {"directory": {"new.ts": {"file": {"contents": "n"}}}}}}
        }

    def test_internal_prefix_on_disk_only(self, tmp_path):
        fs = self.make(tmp_path)
        run(fs.write_file(".codeloop/notes.md", "n"))
        assert os.path.exists(tmp_path / "proj" / ".codeloop" / "notes.md")
        assert fs.diff() == {}

    def test_delete_tombstones(self, tmp_path):
        fs = self.make(tmp_path)
        run(fs.delete_file("src/main.ts"))
        assert not (tmp_path / "proj" / "src" / "main.ts").exists()
        assert dump_tree(fs.diff()) == {"src": {"directory": {"main.ts": {"deleted": True}}}}

    def test_edit_on_disk(self, tmp_path):
        fs = self.make(tmp_path)
        run(fs.edit_file("src/main.ts", "a = 1", "a = 3"))
        assert (tmp_path / "proj" / "src" / "main.ts").read_text() == "const a = 3;\n"

    def test_glob_and_grep_skip_excluded_dirs(self, tmp_path):
        fs = self.make(tmp_path)
        assert run(fs.glob("**/*.ts")) == ["src/main.ts"]
        assert run(fs.grep("const a")) == ["src/main.ts:1:const a = 1;"]
        assert run(fs.grep("const", path="src")) == ["src/main.ts:1:const a = 1;"]

    def test_list_dir(self, tmp_path):
        fs = self.make(tmp_path)
        assert run(fs.list_dir(".")) == ["node_modules/", "src/"]
        assert run(fs.list_dir("missing")) == []

    def test_exec_delegates(self, tmp_path):
        executor = FakeExecutor()
        fs = self.make(tmp_path, executor=executor)
        result = run(fs.exec("npm run build"))
        assert result.stdout == "ok"
        assert executor.calls == [("npm run build", fs.root)]

    def test_exec_disabled(self, tmp_path):
        fs = self.make(tmp_path, allow_exec=False)
        assert not fs.supports_exec
        with pytest.raises(CommandsUnsupportedError):
            run(fs.exec("ls"))

    def test_exec_locally(self, tmp_path):
        fs = self.make(tmp_path)
        result = run(fs.exec("echo hello && echo oops 1>&2 && exit 3"))
        assert result.exit_code == 3
        assert result.stdout.strip() == "hello"
        assert result.stderr.strip() == "oops"

    def test_exec_timeout(self, tmp_path):
        fs = self.make(tmp_path, exec_timeout=0.5)
        result = run(fs.exec("sleep 5"))
        assert result.exit_code == 124
        assert "timed out" in result.stderr
