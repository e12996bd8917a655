"""GoChunker — tree-sitter chunking for Go."""

from __future__ import annotations

import functools
import logging

import tree_sitter
from tree_sitter_go import language as _go_language

from ferry.chunking._base import ChunkSpan
from ferry.chunking._treesitter import SpanBuilder, field_text, parse, string_value, text, walk
from ferry.models.chunks import ChunkMetadata, ChunkType, Parameter

logger = logging.getLogger(__name__)

_BRANCH_TYPES = frozenset(
    {
        "if_statement", "for_statement", "expression_switch_statement",
        "type_switch_statement", "select_statement", "expression_case",
        "type_case", "communication_case",
    }
)  # fmt: skip


@functools.cache
def _grammar() -> tree_sitter.Language:
    return tree_sitter.Language(_go_language())


def _visibility(name: str | None) -> str:
    return "public" if name and name[0].isupper() else "private"


def _exports(name: str | None) -> tuple[str, ...]:
    return (name,) if name and name[0].isupper() else ()


class GoChunker:
    """Chunks Go sources with tree-sitter.

    Go declarations live at file level, so only the root's children are
    inspected.  Methods are named ``Receiver.Method``.
    """

    @property
    def languages(self) -> frozenset[str]:
        return frozenset({"go"})

    def chunk(
        self, path: str, source: str, language: str, kinds: frozenset[str]
    ) -> list[ChunkSpan]:
        data = source.encode("utf-8")
        root = parse(_grammar(), path, data)
        b = SpanBuilder(data, root, _BRANCH_TYPES)

        for node in root.children:
            if node.type not in kinds:
                continue
            if node.type == "function_declaration":
                self._emit_function(b, node, None)
            elif node.type == "method_declaration":
                self._emit_function(b, node, _receiver_type(node))
            elif node.type == "type_declaration":
                self._emit_type(b, node)
            elif node.type == "import_declaration":
                deps = _import_paths(node)
                name = deps[0] if len(deps) == 1 else None
                b.emit(node, ChunkType.IMPORT, name, ChunkMetadata(dependencies=deps))
            elif node.type in ("var_declaration", "const_declaration"):
                name = _first_spec_name(node)
                meta = ChunkMetadata(
                    complexity=b.complexity(node),
                    visibility=_visibility(name),
                    exports=_exports(name),
                )
                b.emit(node, ChunkType.VARIABLE, name, meta)
        return b.spans

    def _emit_function(
        self, b: SpanBuilder, node: tree_sitter.Node, receiver: str | None
    ) -> None:
        name = field_text(node, "name")
        scoped = f"{receiver}.{name}" if receiver and name else name
        meta = ChunkMetadata(
            complexity=b.complexity(node),
            visibility=_visibility(name),
            parameters=_parameters(node.child_by_field_name("parameters")),
            exports=_exports(name) if receiver is None else (),
            return_type=field_text(node, "result"),
        )
        chunk_type = ChunkType.METHOD if receiver is not None else ChunkType.FUNCTION
        b.emit(node, chunk_type, scoped, meta)

    def _emit_type(self, b: SpanBuilder, node: tree_sitter.Node) -> None:
        spec = next((c for c in node.children if c.type in ("type_spec", "type_alias")), None)
        name = field_text(spec, "name") if spec is not None else None
        type_node = spec.child_by_field_name("type") if spec is not None else None
        if type_node is not None and type_node.type == "struct_type":
            chunk_type = ChunkType.CLASS
        elif type_node is not None and type_node.type == "interface_type":
            chunk_type = ChunkType.INTERFACE
        else:
            chunk_type = ChunkType.TYPE
        meta = ChunkMetadata(
            complexity=b.complexity(node),
            visibility=_visibility(name),
            exports=_exports(name),
        )
        b.emit(node, chunk_type, name, meta)


def _receiver_type(node: tree_sitter.Node) -> str | None:
    """Receiver type name for ``(s Server)`` and ``(s *Server)`` forms."""
    receiver = node.child_by_field_name("receiver")
    if receiver is None:
        return None
    for param in receiver.children:
        if param.type != "parameter_declaration":
            continue
        type_node = param.child_by_field_name("type")
        if type_node is None:
            continue
        for inner in walk(type_node):
            if inner.type == "type_identifier":
                return text(inner)
    return None


def _import_paths(node: tree_sitter.Node) -> tuple[str, ...]:
    paths: list[str] = []
    for child in walk(node):
        if child.type == "import_spec":
            path_node = child.child_by_field_name("path")
            if path_node is not None:
                paths.append(string_value(path_node))
    return tuple(paths)


def _first_spec_name(node: tree_sitter.Node) -> str | None:
    for child in walk(node):
        if child.type in ("var_spec", "const_spec"):
            return field_text(child, "name")
    return None


def _parameters(params: tree_sitter.Node | None) -> tuple[Parameter, ...]:
    if params is None:
        return ()
    result: list[Parameter] = []
    for decl in params.named_children:
        if decl.type not in ("parameter_declaration", "variadic_parameter_declaration"):
            continue
        type_name = field_text(decl, "type")
        if decl.type == "variadic_parameter_declaration" and type_name:
            type_name = "..." + type_name
        names = [text(n) for n in decl.children_by_field_name("name")]
        if not names:
            result.append(Parameter(name="_", type=type_name))
        for name in names:
            result.append(Parameter(name=name, type=type_name))
    return tuple(result)
