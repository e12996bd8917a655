"""JavaChunker — tree-sitter chunking for Java."""

from __future__ import annotations

import functools
import logging

import tree_sitter
import tree_sitter_java

from ferry.chunking._base import ChunkSpan
from ferry.chunking._treesitter import SpanBuilder, field_text, has_child, parse, text, walk
from ferry.models.chunks import ChunkMetadata, ChunkType, Parameter

logger = logging.getLogger(__name__)

_BRANCH_TYPES = frozenset(
    {
        "if_statement", "for_statement", "enhanced_for_statement", "while_statement",
        "do_statement", "switch_expression", "switch_block_statement_group",
        "switch_rule", "try_statement", "catch_clause", "ternary_expression",
    }
)  # fmt: skip

_TYPE_DECLARATIONS: dict[str, ChunkType] = {
    "class_declaration": ChunkType.CLASS,
    "record_declaration": ChunkType.CLASS,
    "interface_declaration": ChunkType.INTERFACE,
    "enum_declaration": ChunkType.ENUM,
}

_VISIBILITY_TOKENS = ("public", "private", "protected")


@functools.cache
def _grammar() -> tree_sitter.Language:
    return tree_sitter.Language(tree_sitter_java.language())


class JavaChunker:
    """Chunks Java sources with tree-sitter.

    Type declarations, methods, constructors and fields are emitted at any
    nesting depth; imports at file level.
    """

    @property
    def languages(self) -> frozenset[str]:
        return frozenset({"java"})

    def chunk(
        self, path: str, source: str, language: str, kinds: frozenset[str]
    ) -> list[ChunkSpan]:
        data = source.encode("utf-8")
        root = parse(_grammar(), path, data)
        b = SpanBuilder(data, root, _BRANCH_TYPES)
        self._visit(b, root, kinds, top_level=True)
        return b.spans

    def _visit(
        self, b: SpanBuilder, node: tree_sitter.Node, kinds: frozenset[str], *, top_level: bool
    ) -> None:
        for child in node.children:
            kind = child.type
            if kind in kinds:
                if kind in _TYPE_DECLARATIONS:
                    self._emit_type(b, child, top_level=top_level)
                elif kind in ("method_declaration", "constructor_declaration"):
                    self._emit_method(b, child)
                elif kind == "field_declaration":
                    self._emit_field(b, child)
                elif kind == "import_declaration" and top_level:
                    dep = _import_target(child)
                    b.emit(child, ChunkType.IMPORT, dep or None, ChunkMetadata(dependencies=(dep,) if dep else ()))
            self._visit(b, child, kinds, top_level=False)

    def _emit_type(self, b: SpanBuilder, node: tree_sitter.Node, *, top_level: bool) -> None:
        name = field_text(node, "name")
        modifiers = _modifiers(node)
        visibility = _visibility(modifiers)
        meta = ChunkMetadata(
            complexity=b.complexity(node),
            is_static="static" in modifiers,
            visibility=visibility,
            exports=(name,) if top_level and name and visibility == "public" else (),
        )
        b.emit(node, _TYPE_DECLARATIONS[node.type], name, meta)

    def _emit_method(self, b: SpanBuilder, node: tree_sitter.Node) -> None:
        modifiers = _modifiers(node)
        meta = ChunkMetadata(
            complexity=b.complexity(node),
            is_static="static" in modifiers,
            visibility=_visibility(modifiers),
            parameters=_parameters(node.child_by_field_name("parameters")),
            return_type=field_text(node, "type"),
        )
        b.emit(node, ChunkType.METHOD, field_text(node, "name"), meta)

    def _emit_field(self, b: SpanBuilder, node: tree_sitter.Node) -> None:
        modifiers = _modifiers(node)
        declarator = node.child_by_field_name("declarator")
        name = field_text(declarator, "name") if declarator is not None else None
        meta = ChunkMetadata(
            complexity=b.complexity(node),
            is_static="static" in modifiers,
            visibility=_visibility(modifiers),
            return_type=field_text(node, "type"),
        )
        b.emit(node, ChunkType.VARIABLE, name, meta)


def _modifiers(node: tree_sitter.Node) -> frozenset[str]:
    mods = next((c for c in node.children if c.type == "modifiers"), None)
    if mods is None:
        return frozenset()
    return frozenset(c.type for c in mods.children if not c.is_named)


def _visibility(modifiers: frozenset[str]) -> str:
    for token in _VISIBILITY_TOKENS:
        if token in modifiers:
            return token
    return "package"


def _import_target(node: tree_sitter.Node) -> str:
    target = next(
        (text(c) for c in node.named_children if c.type in ("scoped_identifier", "identifier")),
        "",
    )
    if target and has_child(node, "asterisk"):
        target += ".*"
    return target


def _parameters(params: tree_sitter.Node | None) -> tuple[Parameter, ...]:
    if params is None:
        return ()
    result: list[Parameter] = []
    for child in params.named_children:
        if child.type == "formal_parameter":
            result.append(
                Parameter(name=field_text(child, "name") or "", type=field_text(child, "type"))
            )
        elif child.type == "spread_parameter":
            type_node = next((c for c in child.named_children if c.type != "modifiers"), None)
            name = next(
                (text(n) for n in walk(child) if n.type == "identifier" and n.parent is not None and n.parent.type == "variable_declarator"),
                "",
            )
            result.append(Parameter(name=name, type=f"{text(type_node)}..." if type_node else None))
    return tuple(result)
