"""PythonChunker — stdlib ``ast``-based chunking."""

from __future__ import annotations

import ast
import io
import logging
import tokenize
from typing import TYPE_CHECKING

from ferry.chunking._base import (
    ChunkSpan,
    cap_complexity,
    line_offsets,
    strip_comment_markers,
    synth_name,
    visibility_from_name,
)
from ferry.exceptions import ChunkParseError
from ferry.models.chunks import ChunkMetadata, ChunkType, Parameter

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

_ENUM_BASES = frozenset({"Enum", "IntEnum", "StrEnum", "Flag", "IntFlag"})
_INTERFACE_BASES = frozenset({"Protocol", "ABC"})
_CONTROL_TYPES: dict[type[ast.AST], ChunkType] = {
    ast.Try: ChunkType.TRY_CATCH,
    ast.If: ChunkType.CONDITIONAL,
    ast.For: ChunkType.LOOP,
    ast.AsyncFor: ChunkType.LOOP,
    ast.While: ChunkType.LOOP,
    ast.Match: ChunkType.SWITCH,
    ast.TryStar: ChunkType.TRY_CATCH,
}


class PythonChunker:
    """Chunks Python source using the stdlib :mod:`ast` module.

    Functions, methods and classes are emitted at any depth.  Imports,
    assignments and control-flow blocks are emitted at module level only.
    """

    @property
    def languages(self) -> frozenset[str]:
        return frozenset({"python"})

    def chunk(
        self, path: str, source: str, language: str, kinds: frozenset[str]
    ) -> list[ChunkSpan]:
        data = source.encode("utf-8")
        offsets = line_offsets(data)
        try:
            tree = ast.parse(source, filename=path)
        except SyntaxError as e:
            raise ChunkParseError(
                f"{path}: {e.msg} (line {e.lineno})",
                byte_offset=_syntax_error_offset(source, offsets, e),
            ) from e

        ctx = _Context(path, data, offsets, kinds, _collect_comments(source, offsets))
        for node in tree.body:
            ctx.visit(node, top_level=True, in_class=False)
        return ctx.spans


class _Context:
    def __init__(
        self,
        path: str,
        data: bytes,
        offsets: list[int],
        kinds: frozenset[str],
        comments: list[tuple[int, str]],
    ) -> None:
        self.path = path
        self.data = data
        self.offsets = offsets
        self.kinds = kinds
        self.comments = comments
        self.spans: list[ChunkSpan] = []

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def visit(self, node: ast.AST, *, top_level: bool, in_class: bool) -> None:
        kind = type(node).__name__
        enabled = kind in self.kinds

        if isinstance(node, ast.FunctionDef | ast.AsyncFunctionDef):
            if enabled:
                self._emit_function(node, top_level=top_level, in_class=in_class)
            for child in node.body:
                self.visit(child, top_level=False, in_class=False)
            return

        if isinstance(node, ast.ClassDef):
            if enabled:
                self._emit_class(node, top_level=top_level)
            for child in node.body:
                self.visit(child, top_level=False, in_class=True)
            return

        if top_level and enabled:
            self._emit_statement(node)
        for child in ast.iter_child_nodes(node):
            if isinstance(child, ast.stmt | ast.excepthandler | ast.match_case):
                self.visit(child, top_level=False, in_class=in_class)

    def _emit_statement(self, node: ast.AST) -> None:
        if isinstance(node, ast.Import | ast.ImportFrom):
            deps = _import_targets(node)
            name = deps[0] if len(deps) == 1 else None
            self._emit(node, ChunkType.IMPORT, name, ChunkMetadata(dependencies=tuple(deps)))
        elif isinstance(node, ast.Assign | ast.AnnAssign):
            name = _assign_name(node)
            annotation = ast.unparse(node.annotation) if isinstance(node, ast.AnnAssign) else None
            meta = ChunkMetadata(
                complexity=_complexity(node),
                visibility=visibility_from_name(name or ""),
                exports=(name,) if name and not name.startswith("_") else (),
                return_type=annotation,
            )
            self._emit(node, ChunkType.VARIABLE, name, meta)
        elif isinstance(node, ast.TypeAlias):
            name = node.name.id
            self._emit(node, ChunkType.TYPE, name, ChunkMetadata(exports=(name,)))
        elif type(node) in _CONTROL_TYPES:
            meta = ChunkMetadata(complexity=_complexity(node), dependencies=_nested_imports(node))
            self._emit(node, _CONTROL_TYPES[type(node)], None, meta)

    # ------------------------------------------------------------------
    # Emitters
    # ------------------------------------------------------------------

    def _emit_function(
        self,
        node: ast.FunctionDef | ast.AsyncFunctionDef,
        *,
        top_level: bool,
        in_class: bool,
    ) -> None:
        is_async = isinstance(node, ast.AsyncFunctionDef)
        is_generator = _is_generator(node)
        if in_class:
            chunk_type = ChunkType.METHOD
        elif is_async:
            chunk_type = ChunkType.ASYNC_FUNCTION
        elif is_generator:
            chunk_type = ChunkType.GENERATOR
        else:
            chunk_type = ChunkType.FUNCTION

        decorators = {_decorator_name(d) for d in node.decorator_list}
        meta = ChunkMetadata(
            complexity=_complexity(node),
            is_async=is_async,
            is_generator=is_generator,
            is_static="staticmethod" in decorators,
            visibility=visibility_from_name(node.name),
            parameters=_parameters(node.args),
            dependencies=_nested_imports(node),
            exports=(node.name,) if top_level and not node.name.startswith("_") else (),
            return_type=ast.unparse(node.returns) if node.returns is not None else None,
        )
        self._emit(node, chunk_type, node.name, meta, docstring=ast.get_docstring(node))

    def _emit_class(self, node: ast.ClassDef, *, top_level: bool) -> None:
        bases = {_base_name(b) for b in node.bases}
        if bases & _ENUM_BASES:
            chunk_type = ChunkType.ENUM
        elif bases & _INTERFACE_BASES:
            chunk_type = ChunkType.INTERFACE
        else:
            chunk_type = ChunkType.CLASS
        meta = ChunkMetadata(
            complexity=_complexity(node),
            visibility=visibility_from_name(node.name),
            dependencies=_nested_imports(node),
            exports=(node.name,) if top_level and not node.name.startswith("_") else (),
        )
        self._emit(node, chunk_type, node.name, meta, docstring=ast.get_docstring(node))

    def _emit(
        self,
        node: ast.AST,
        chunk_type: ChunkType,
        name: str | None,
        meta: ChunkMetadata,
        docstring: str | None = None,
    ) -> None:
        start_line = node.lineno  # type: ignore[attr-defined]
        start_col = node.col_offset  # type: ignore[attr-defined]
        for dec in getattr(node, "decorator_list", ()):
            if (dec.lineno, dec.col_offset - 1) < (start_line, start_col):
                # Include the ``@`` that precedes the decorator expression.
                start_line, start_col = dec.lineno, max(dec.col_offset - 1, 0)
        end_line = node.end_lineno or start_line  # type: ignore[attr-defined]
        end_col = node.end_col_offset or 0  # type: ignore[attr-defined]

        start_byte = self.offsets[start_line - 1] + start_col
        end_byte = self.offsets[end_line - 1] + end_col

        comments = [text for offset, text in self.comments if start_byte <= offset < end_byte]
        if docstring:
            comments.insert(0, docstring)

        self.spans.append(
            ChunkSpan(
                chunk_type=chunk_type,
                name=name or synth_name(chunk_type, start_line, start_col),
                content=self.data[start_byte:end_byte].decode("utf-8"),
                start_line=start_line,
                end_line=end_line,
                start_column=start_col,
                end_column=end_col,
                start_byte=start_byte,
                end_byte=end_byte,
                metadata=_with_comments(meta, comments),
            )
        )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _with_comments(meta: ChunkMetadata, comments: list[str]) -> ChunkMetadata:
    if not comments:
        return meta
    data = meta.to_dict()
    data["comments"] = comments
    return ChunkMetadata.from_dict(data)


def _syntax_error_offset(source: str, offsets: list[int], err: SyntaxError) -> int:
    if not err.lineno:
        return 0
    lineno = min(err.lineno, len(offsets))
    lines = source.splitlines()
    line_text = lines[lineno - 1] if lineno - 1 < len(lines) else ""
    col = max((err.offset or 1) - 1, 0)
    return offsets[lineno - 1] + len(line_text[:col].encode("utf-8"))


def _collect_comments(source: str, offsets: list[int]) -> list[tuple[int, str]]:
    """Return ``(byte_offset, text)`` for every ``#`` comment in *source*."""
    found: list[tuple[int, str]] = []
    lines = source.splitlines(keepends=True)
    try:
        for tok in tokenize.generate_tokens(io.StringIO(source).readline):
            if tok.type != tokenize.COMMENT:
                continue
            row, col = tok.start
            prefix = lines[row - 1][:col] if row - 1 < len(lines) else ""
            found.append((offsets[row - 1] + len(prefix.encode("utf-8")), strip_comment_markers(tok.string)))
    except (tokenize.TokenError, SyntaxError):
        logger.debug("Comment extraction stopped early", exc_info=True)
    return found


def _import_targets(node: ast.Import | ast.ImportFrom) -> list[str]:
    if isinstance(node, ast.Import):
        return [alias.name for alias in node.names]
    module = "." * node.level + (node.module or "")
    return [module] if module else []


def _nested_imports(node: ast.AST) -> tuple[str, ...]:
    deps: list[str] = []
    for child in ast.walk(node):
        if isinstance(child, ast.Import | ast.ImportFrom):
            for target in _import_targets(child):
                if target not in deps:
                    deps.append(target)
    return tuple(deps)


def _assign_name(node: ast.Assign | ast.AnnAssign) -> str | None:
    targets = node.targets if isinstance(node, ast.Assign) else [node.target]
    for target in targets:
        if isinstance(target, ast.Name):
            return target.id
        if isinstance(target, ast.Tuple):
            for elt in target.elts:
                if isinstance(elt, ast.Name):
                    return elt.id
    return None


def _decorator_name(node: ast.expr) -> str:
    if isinstance(node, ast.Call):
        node = node.func
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Name):
        return node.id
    return ""


def _base_name(node: ast.expr) -> str:
    if isinstance(node, ast.Subscript):
        node = node.value
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Name):
        return node.id
    return ""


def _infer_type(default: ast.expr | None) -> str | None:
    if isinstance(default, ast.Constant) and default.value is not None:
        return type(default.value).__name__
    if isinstance(default, ast.List | ast.ListComp):
        return "list"
    if isinstance(default, ast.Dict | ast.DictComp):
        return "dict"
    if isinstance(default, ast.Tuple):
        return "tuple"
    return None


def _parameters(args: ast.arguments) -> tuple[Parameter, ...]:
    positional = [*args.posonlyargs, *args.args]
    defaults: list[ast.expr | None] = [None] * (len(positional) - len(args.defaults))
    defaults.extend(args.defaults)

    params: list[Parameter] = []
    for arg, default in zip(positional, defaults, strict=True):
        params.append(_param(arg, default))
    if args.vararg is not None:
        params.append(_param(args.vararg, None, prefix="*"))
    for arg, default in zip(args.kwonlyargs, args.kw_defaults, strict=True):
        params.append(_param(arg, default))
    if args.kwarg is not None:
        params.append(_param(args.kwarg, None, prefix="**"))
    return tuple(params)


def _param(arg: ast.arg, default: ast.expr | None, prefix: str = "") -> Parameter:
    if arg.annotation is not None:
        type_name: str | None = ast.unparse(arg.annotation)
    else:
        type_name = _infer_type(default)
    return Parameter(name=prefix + arg.arg, type=type_name)


def _walk_own_body(node: ast.AST) -> Iterator[ast.AST]:
    """Walk *node* without descending into nested function or class scopes."""
    stack = list(ast.iter_child_nodes(node))
    while stack:
        child = stack.pop()
        yield child
        if isinstance(child, ast.FunctionDef | ast.AsyncFunctionDef | ast.ClassDef | ast.Lambda):
            continue
        stack.extend(ast.iter_child_nodes(child))


def _is_generator(node: ast.FunctionDef | ast.AsyncFunctionDef) -> bool:
    return any(isinstance(child, ast.Yield | ast.YieldFrom) for child in _walk_own_body(node))


def _complexity(node: ast.AST) -> int:
    branches = 0
    for child in ast.walk(node):
        if isinstance(child, ast.If | ast.For | ast.AsyncFor | ast.While | ast.IfExp | ast.Try | ast.TryStar):
            branches += 1
        elif isinstance(child, ast.ExceptHandler | ast.match_case):
            branches += 1
        elif isinstance(child, ast.BoolOp):
            branches += len(child.values) - 1
        elif isinstance(child, ast.comprehension):
            branches += len(child.ifs)
    return cap_complexity(branches)
