"""Shared tree-sitter plumbing for the JS/TS, Go and Java chunkers."""

from __future__ import annotations

from typing import TYPE_CHECKING

import tree_sitter

from ferry.chunking._base import ChunkSpan, cap_complexity, strip_comment_markers, synth_name
from ferry.exceptions import ChunkParseError
from ferry.models.chunks import ChunkMetadata, ChunkType

if TYPE_CHECKING:
    from collections.abc import Iterator

_COMMENT_TYPES = frozenset({"comment", "line_comment", "block_comment"})


def parse(language: tree_sitter.Language, path: str, data: bytes) -> tree_sitter.Node:
    """Parse *data* and return the root node, raising on syntax errors."""
    parser = tree_sitter.Parser(language)
    tree = parser.parse(data)
    root = tree.root_node
    if root.has_error:
        offset = first_error_offset(root)
        msg = f"{path}: syntax error at byte {offset}"
        raise ChunkParseError(msg, byte_offset=offset)
    return root


def first_error_offset(root: tree_sitter.Node) -> int:
    """Byte offset of the first ``ERROR`` or missing node in source order."""
    for node in walk(root):
        if node.type == "ERROR" or node.is_missing:
            return node.start_byte
    return root.start_byte


def walk(node: tree_sitter.Node) -> Iterator[tree_sitter.Node]:
    """Pre-order, source-order traversal of *node* and its descendants."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def text(node: tree_sitter.Node | None) -> str:
    if node is None or node.text is None:
        return ""
    return node.text.decode("utf-8", errors="replace")


def field_text(node: tree_sitter.Node, name: str) -> str | None:
    child = node.child_by_field_name(name)
    value = text(child)
    return value or None


def has_child(node: tree_sitter.Node, *types: str) -> bool:
    return any(child.type in types for child in node.children)


def string_value(node: tree_sitter.Node) -> str:
    """Contents of a string literal node without its quotes."""
    for child in node.children:
        if child.type in ("string_fragment", "interpreted_string_literal_content", "string_content"):
            return text(child)
    return text(node).strip("\"'`")


def count_branches(
    node: tree_sitter.Node,
    branch_types: frozenset[str],
    logical_ops: frozenset[str] = frozenset({"&&", "||"}),
) -> int:
    count = 0
    for child in walk(node):
        if child.type in branch_types:
            count += 1
        elif child.type == "binary_expression":
            op = child.child_by_field_name("operator")
            if op is not None and op.type in logical_ops:
                count += 1
    return count


def collect_comments(root: tree_sitter.Node) -> list[tuple[int, str]]:
    """Return ``(start_byte, text)`` for every comment node under *root*."""
    return [
        (node.start_byte, strip_comment_markers(text(node)))
        for node in walk(root)
        if node.type in _COMMENT_TYPES
    ]


class SpanBuilder:
    """Builds :class:`ChunkSpan` objects for one parsed file."""

    def __init__(self, data: bytes, root: tree_sitter.Node, branch_types: frozenset[str]) -> None:
        self.data = data
        self.branch_types = branch_types
        self.comments = collect_comments(root)
        self.spans: list[ChunkSpan] = []

    def complexity(self, node: tree_sitter.Node) -> int:
        return cap_complexity(count_branches(node, self.branch_types))

    def emit(
        self,
        node: tree_sitter.Node,
        chunk_type: ChunkType,
        name: str | None,
        meta: ChunkMetadata,
    ) -> None:
        start_line = node.start_point.row + 1
        start_col = node.start_point.column
        comments = [c for offset, c in self.comments if node.start_byte <= offset < node.end_byte]
        if comments:
            data = meta.to_dict()
            data["comments"] = comments
            meta = ChunkMetadata.from_dict(data)
        self.spans.append(
            ChunkSpan(
                chunk_type=chunk_type,
                name=name or synth_name(chunk_type, start_line, start_col),
                content=self.data[node.start_byte : node.end_byte].decode("utf-8"),
                start_line=start_line,
                end_line=node.end_point.row + 1,
                start_column=start_col,
                end_column=node.end_point.column,
                start_byte=node.start_byte,
                end_byte=node.end_byte,
                metadata=meta,
            )
        )
