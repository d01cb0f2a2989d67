from codeloop.sandbox.base import ExecResult, FileSystem
from codeloop.sandbox.disk import DiskFileSystem
from codeloop.sandbox.memory import MemoryFileSystem
from codeloop.sandbox.processes import ProcessManager


__all__ = [
    "DiskFileSystem",
    "ExecResult",
    "FileSystem",
    "MemoryFileSystem",
    "ProcessManager",
]
