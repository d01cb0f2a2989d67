"""Project file trees.

A tree is a mapping of names to nodes. Each node is exactly one of a file,
a directory, or (only inside diffs) a deletion tombstone. Names never
contain ``/``; nested paths are always expressed through directories.
"""

import mimetypes
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, TypeAdapter, field_validator


class FileContents(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contents: str
    encoding: Literal["base64"] | None = None


class FileNode(BaseModel):
    model_config = ConfigDict(extra="forbid")

    file: FileContents


class DirectoryNode(BaseModel):
    model_config = ConfigDict(extra="forbid")

    directory: dict[str, "TreeNode"]

    @field_validator("directory")
    @classmethod
    def _check_names(cls, value: dict[str, Any]) -> dict[str, Any]:
        return _validate_names(value)


class DeletedNode(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deleted: Literal[True]


TreeNode = Union[FileNode, DirectoryNode, DeletedNode]
DirectoryNode.model_rebuild()

FileTree = dict[str, TreeNode]

_tree_adapter: TypeAdapter[FileTree] = TypeAdapter(FileTree)


def _validate_names(entries: dict[str, Any]) -> dict[str, Any]:
    for name in entries:
        if not name or "/" in name:
            raise ValueError(f"invalid entry name: {name!r}")
    return entries


def parse_tree(raw: dict[str, Any] | None) -> FileTree:
    """Validate a JSON-shaped tree into typed nodes."""
    if not raw:
        return {}
    return _validate_names(_tree_adapter.validate_python(raw))


def dump_tree(tree: FileTree) -> dict[str, Any]:
    return _tree_adapter.dump_python(tree, exclude_none=True)


def _split_data_uri(content: str) -> tuple[str, str] | None:
    if not content.startswith("data:"):
        return None
    header, sep, payload = content.partition(",")
    if not sep or not header.endswith(";base64"):
        return None
    return header[len("data:") : -len(";base64")], payload


def _binary_mime(path: str) -> str:
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


def _binary_payload(path: str, content: str) -> str | None:
    """Payload of a data URI written for ``path`` by :func:`flatten_tree`, if it is one.

    Text that merely looks like a data URI stays text unless its media type
    matches the one guessed for the path.
    """
    data_uri = _split_data_uri(content)
    if data_uri is None or data_uri[0] != _binary_mime(path):
        return None
    return data_uri[1]


def _as_data_uri(path: str, payload: str) -> str:
    mime = _binary_mime(path)
    return f"data:{mime};base64,{payload}"


def flatten_tree(tree: FileTree, prefix: str = "") -> dict[str, str]:
    """Collapse a tree into ``{path: content}``; tombstones are skipped.

    Binary files come back as data URIs so that :func:`add_file` can rebuild them.
    """
    files: dict[str, str] = {}
    for name, node in tree.items():
        path = f"{prefix}{name}"
        if isinstance(node, FileNode):
            if node.file.encoding == "base64":
                files[path] = _as_data_uri(path, node.file.contents)
            else:
                files[path] = node.file.contents
        elif isinstance(node, DirectoryNode):
            files.update(flatten_tree(node.directory, f"{path}/"))
    return files


def _split_path(path: str) -> list[str]:
    parts = [p for p in path.replace("\\", "/").split("/") if p and p != "."]
    if not parts:
        raise ValueError(f"invalid file path: {path!r}")
    return parts


def _parent_directory(tree: FileTree, parts: list[str]) -> FileTree:
    current = tree
    for part in parts[:-1]:
        node = current.get(part)
        if not isinstance(node, DirectoryNode):
            node = DirectoryNode(directory={})
            current[part] = node
        current = node.directory
    return current


def add_file(tree: FileTree, path: str, content: str) -> None:
    """Insert a file at ``path``, creating (or replacing with) directories along the way."""
    parts = _split_path(path)
    parent = _parent_directory(tree, parts)
    payload = _binary_payload(path, content)
    if payload is not None:
        parent[parts[-1]] = FileNode(file=FileContents(contents=payload, encoding="base64"))
    else:
        parent[parts[-1]] = FileNode(file=FileContents(contents=content))


def mark_deleted(tree: FileTree, path: str) -> None:
    parts = _split_path(path)
    parent = _parent_directory(tree, parts)
    parent[parts[-1]] = DeletedNode(deleted=True)


def build_tree(files: dict[str, str]) -> FileTree:
    tree: FileTree = {}
    for path, content in files.items():
        add_file(tree, path, content)
    return tree


def tree_summary(files: dict[str, str]) -> str:
    return "\n".join(sorted(files))
