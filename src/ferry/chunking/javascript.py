"""JavaScriptChunker — tree-sitter chunking for JavaScript, TypeScript and TSX."""

from __future__ import annotations

import functools
import logging
import posixpath

import tree_sitter
from tree_sitter_javascript import language as _js_language
from tree_sitter_typescript import language_tsx as _tsx_language
from tree_sitter_typescript import language_typescript as _ts_language

from ferry.chunking._base import ChunkSpan, visibility_from_name
from ferry.chunking._treesitter import (
    SpanBuilder,
    field_text,
    has_child,
    parse,
    string_value,
    text,
    walk,
)
from ferry.models.chunks import ChunkMetadata, ChunkType, Parameter

logger = logging.getLogger(__name__)

_BRANCH_TYPES = frozenset(
    {
        "if_statement", "for_statement", "for_in_statement", "while_statement",
        "do_statement", "switch_statement", "switch_case", "try_statement",
        "catch_clause", "ternary_expression",
    }
)  # fmt: skip

_CONTROL_TYPES: dict[str, ChunkType] = {
    "try_statement": ChunkType.TRY_CATCH,
    "if_statement": ChunkType.CONDITIONAL,
    "for_statement": ChunkType.LOOP,
    "for_in_statement": ChunkType.LOOP,
    "while_statement": ChunkType.LOOP,
    "do_statement": ChunkType.LOOP,
    "switch_statement": ChunkType.SWITCH,
}

_DECLARATION_TYPES: dict[str, ChunkType] = {
    "class_declaration": ChunkType.CLASS,
    "abstract_class_declaration": ChunkType.CLASS,
    "interface_declaration": ChunkType.INTERFACE,
    "type_alias_declaration": ChunkType.TYPE,
    "enum_declaration": ChunkType.ENUM,
}

_FUNCTION_VALUES = frozenset({"function_expression", "function", "generator_function"})
_TS_EXTENSIONS = frozenset({".ts", ".mts", ".cts"})

_LITERAL_TYPES: dict[str, str] = {
    "number": "number",
    "string": "string",
    "template_string": "string",
    "true": "boolean",
    "false": "boolean",
    "array": "array",
    "object": "object",
    "arrow_function": "function",
    "function_expression": "function",
}


@functools.cache
def _grammar(name: str) -> tree_sitter.Language:
    if name == "tsx":
        return tree_sitter.Language(_tsx_language())
    if name == "typescript":
        return tree_sitter.Language(_ts_language())
    return tree_sitter.Language(_js_language())


def grammar_for(path: str, language: str) -> str:
    """Pick the grammar for *path*: ``"tsx"``, ``"typescript"`` or ``"javascript"``."""
    ext = posixpath.splitext(path)[1].lower()
    if ext == ".tsx":
        return "tsx"
    if ext in _TS_EXTENSIONS or language == "typescript":
        return "typescript"
    return "javascript"


class JavaScriptChunker:
    """Chunks JavaScript and TypeScript sources with tree-sitter.

    Functions, classes, methods and TS declarations are emitted at any
    depth.  Imports, exports, variable declarations and control-flow
    statements are emitted at program level only.  An ``export`` wrapping
    a declaration yields one chunk typed after the declaration, spanning
    the whole export statement.
    """

    @property
    def languages(self) -> frozenset[str]:
        return frozenset({"javascript", "typescript"})

    def chunk(
        self, path: str, source: str, language: str, kinds: frozenset[str]
    ) -> list[ChunkSpan]:
        data = source.encode("utf-8")
        root = parse(_grammar(grammar_for(path, language)), path, data)
        builder = SpanBuilder(data, root, _BRANCH_TYPES)
        _Visitor(builder, kinds).visit_children(root, top_level=True)
        return builder.spans


class _Visitor:
    def __init__(self, builder: SpanBuilder, kinds: frozenset[str]) -> None:
        self.b = builder
        self.kinds = kinds

    def visit_children(self, node: tree_sitter.Node, *, top_level: bool) -> None:
        for child in node.children:
            self.visit(child, top_level=top_level)

    def visit(self, node: tree_sitter.Node, *, top_level: bool) -> None:
        kind = node.type
        enabled = kind in self.kinds

        if kind == "export_statement":
            self._visit_export(node, enabled=enabled, top_level=top_level)
            return
        if kind in ("function_declaration", "generator_function_declaration"):
            if enabled:
                self._emit_function(node, node, exported=False)
        elif kind == "method_definition":
            if enabled:
                self._emit_method(node)
        elif kind in _DECLARATION_TYPES:
            if enabled:
                self._emit_declaration(node, node, exported=False)
        elif kind in ("lexical_declaration", "variable_declaration"):
            self._visit_variable(node, node, enabled=enabled, top_level=top_level, exported=False)
        elif kind == "import_statement":
            if enabled and top_level:
                source = node.child_by_field_name("source")
                dep = string_value(source) if source is not None else ""
                meta = ChunkMetadata(dependencies=(dep,) if dep else ())
                self.b.emit(node, ChunkType.IMPORT, dep or None, meta)
            return
        elif kind in _CONTROL_TYPES and enabled and top_level:
            meta = ChunkMetadata(
                complexity=self.b.complexity(node),
                dependencies=_dependencies(node),
            )
            self.b.emit(node, _CONTROL_TYPES[kind], None, meta)

        self.visit_children(node, top_level=False)

    # ------------------------------------------------------------------
    # Exports and variables
    # ------------------------------------------------------------------

    def _visit_export(self, node: tree_sitter.Node, *, enabled: bool, top_level: bool) -> None:
        declaration = node.child_by_field_name("declaration")
        if declaration is not None:
            dkind = declaration.type
            if dkind in ("function_declaration", "generator_function_declaration"):
                if dkind in self.kinds:
                    self._emit_function(declaration, node, exported=True)
            elif dkind in _DECLARATION_TYPES:
                if dkind in self.kinds:
                    self._emit_declaration(declaration, node, exported=True)
            elif dkind in ("lexical_declaration", "variable_declaration"):
                self._visit_variable(
                    declaration,
                    node,
                    enabled=dkind in self.kinds,
                    top_level=top_level,
                    exported=True,
                )
            self.visit_children(declaration, top_level=False)
            return

        if enabled and top_level:
            names = _export_names(node)
            source = node.child_by_field_name("source")
            deps = (string_value(source),) if source is not None else ()
            if has_child(node, "default"):
                name: str | None = "default"
                names = names or ("default",)
            else:
                name = names[0] if len(names) == 1 else None
            meta = ChunkMetadata(
                complexity=self.b.complexity(node),
                exports=names,
                dependencies=deps or _dependencies(node),
            )
            self.b.emit(node, ChunkType.EXPORT, name, meta)
        self.visit_children(node, top_level=False)

    def _visit_variable(
        self,
        decl: tree_sitter.Node,
        span_node: tree_sitter.Node,
        *,
        enabled: bool,
        top_level: bool,
        exported: bool,
    ) -> None:
        declarator = next((c for c in decl.children if c.type == "variable_declarator"), None)
        if declarator is None or not enabled:
            return
        name = field_text(declarator, "name")
        value = declarator.child_by_field_name("value")
        value_type = value.type if value is not None else None

        if value_type == "arrow_function":
            chunk_type = ChunkType.ARROW_FUNCTION
        elif value_type in _FUNCTION_VALUES:
            chunk_type = ChunkType.GENERATOR if value_type == "generator_function" else ChunkType.FUNCTION
        elif top_level:
            chunk_type = ChunkType.VARIABLE
        else:
            return

        is_function = value is not None and chunk_type is not ChunkType.VARIABLE
        meta = ChunkMetadata(
            complexity=self.b.complexity(decl),
            is_async=is_function and has_child(value, "async"),  # type: ignore[arg-type]
            is_generator=chunk_type is ChunkType.GENERATOR,
            visibility=visibility_from_name(name or ""),
            parameters=_parameters(value) if is_function else (),  # type: ignore[arg-type]
            dependencies=_dependencies(decl),
            exports=(name,) if exported and name else (),
            return_type=_return_type(value) if is_function else _type_annotation(declarator),  # type: ignore[arg-type]
        )
        if chunk_type is ChunkType.FUNCTION and meta.is_async:
            chunk_type = ChunkType.ASYNC_FUNCTION
        self.b.emit(span_node, chunk_type, name, meta)

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _emit_function(
        self, node: tree_sitter.Node, span_node: tree_sitter.Node, *, exported: bool
    ) -> None:
        name = field_text(node, "name")
        is_async = has_child(node, "async")
        is_generator = node.type == "generator_function_declaration" or has_child(node, "*")
        if is_generator:
            chunk_type = ChunkType.GENERATOR
        elif is_async:
            chunk_type = ChunkType.ASYNC_FUNCTION
        else:
            chunk_type = ChunkType.FUNCTION
        meta = ChunkMetadata(
            complexity=self.b.complexity(node),
            is_async=is_async,
            is_generator=is_generator,
            visibility=visibility_from_name(name or ""),
            parameters=_parameters(node),
            dependencies=_dependencies(node),
            exports=(name or "default",) if exported else (),
            return_type=_return_type(node),
        )
        self.b.emit(span_node, chunk_type, name, meta)

    def _emit_method(self, node: tree_sitter.Node) -> None:
        name = field_text(node, "name")
        modifier = next((c for c in node.children if c.type == "accessibility_modifier"), None)
        visibility = text(modifier) if modifier is not None else visibility_from_name(name or "")
        meta = ChunkMetadata(
            complexity=self.b.complexity(node),
            is_async=has_child(node, "async"),
            is_generator=has_child(node, "*"),
            is_static=has_child(node, "static"),
            visibility=visibility,
            parameters=_parameters(node),
            dependencies=_dependencies(node),
            return_type=_return_type(node),
        )
        self.b.emit(node, ChunkType.METHOD, name, meta)

    def _emit_declaration(
        self, node: tree_sitter.Node, span_node: tree_sitter.Node, *, exported: bool
    ) -> None:
        name = field_text(node, "name")
        meta = ChunkMetadata(
            complexity=self.b.complexity(node),
            visibility=visibility_from_name(name or ""),
            dependencies=_dependencies(node),
            exports=(name or "default",) if exported else (),
        )
        self.b.emit(span_node, _DECLARATION_TYPES[node.type], name, meta)


# ------------------------------------------------------------------
# Metadata helpers
# ------------------------------------------------------------------


def _export_names(node: tree_sitter.Node) -> tuple[str, ...]:
    names: list[str] = []
    for child in node.children:
        if child.type != "export_clause":
            continue
        for spec in child.children:
            if spec.type != "export_specifier":
                continue
            alias = field_text(spec, "alias") or field_text(spec, "name")
            if alias:
                names.append(alias)
    return tuple(names)


def _dependencies(node: tree_sitter.Node) -> tuple[str, ...]:
    """Import sources, ``require()`` targets and dynamic ``import()`` targets under *node*."""
    deps: list[str] = []
    for child in walk(node):
        target: str | None = None
        if child.type == "import_statement":
            source = child.child_by_field_name("source")
            target = string_value(source) if source is not None else None
        elif child.type == "call_expression":
            fn = child.child_by_field_name("function")
            if fn is not None and (fn.type == "import" or (fn.type == "identifier" and text(fn) == "require")):
                args = child.child_by_field_name("arguments")
                first = next((a for a in args.children if a.type == "string"), None) if args else None
                target = string_value(first) if first is not None else None
        if target and target not in deps:
            deps.append(target)
    return tuple(deps)


def _type_annotation(node: tree_sitter.Node | None) -> str | None:
    if node is None:
        return None
    ann = node.child_by_field_name("type")
    if ann is None:
        return None
    return text(ann).lstrip(":").strip() or None


def _return_type(node: tree_sitter.Node | None) -> str | None:
    if node is None:
        return None
    ann = node.child_by_field_name("return_type")
    if ann is None:
        return None
    return text(ann).lstrip(":").strip() or None


def _parameters(node: tree_sitter.Node | None) -> tuple[Parameter, ...]:
    if node is None:
        return ()
    single = node.child_by_field_name("parameter")
    if single is not None:
        return (Parameter(name=text(single)),)
    params_node = node.child_by_field_name("parameters")
    if params_node is None:
        return ()

    params: list[Parameter] = []
    for child in params_node.named_children:
        if child.type in ("comment",):
            continue
        if child.type in ("required_parameter", "optional_parameter"):
            pattern = child.child_by_field_name("pattern")
            type_name = _type_annotation(child)
            default = child.child_by_field_name("value")
            if type_name is None and default is not None:
                type_name = _LITERAL_TYPES.get(default.type)
            params.append(Parameter(name=text(pattern), type=type_name))
        elif child.type == "assignment_pattern":
            left = child.child_by_field_name("left")
            right = child.child_by_field_name("right")
            inferred = _LITERAL_TYPES.get(right.type) if right is not None else None
            params.append(Parameter(name=text(left), type=inferred))
        elif child.type == "rest_pattern":
            params.append(Parameter(name=text(child), type="array"))
        else:
            params.append(Parameter(name=text(child)))
    return tuple(params)
