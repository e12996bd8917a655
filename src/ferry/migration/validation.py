"""Best-effort validation of migrated files.

None of these checks rejects a result; they are reported alongside it.
"""

from __future__ import annotations

import ast
import posixpath
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ferry.ingest.classifier import normalize_language

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable

_PAIRS = {")": "(", "]": "[", "}": "{"}
_HASH_COMMENT_LANGUAGES = frozenset({"python", "ruby", "shell", "perl", "r"})
_IDENTIFIER = re.compile(r"[A-Za-z_$][\w$]*")

_IMPORT_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "python": (
        re.compile(r"^\s*from\s+(\.+[\w.]*)\s+import\b", re.MULTILINE),
        re.compile(r"^\s*import\s+([\w.]+)", re.MULTILINE),
    ),
    "javascript": (
        re.compile(r"\bfrom\s+['\"]([^'\"]+)['\"]"),
        re.compile(r"\brequire\(\s*['\"]([^'\"]+)['\"]\s*\)"),
        re.compile(r"^\s*import\s+['\"]([^'\"]+)['\"]", re.MULTILINE),
    ),
    "go": (re.compile(r"\"(\.{1,2}/[^\"]*)\""),),
}
_IMPORT_PATTERNS["typescript"] = _IMPORT_PATTERNS["javascript"]

# Fraction of original declaration names a migrated file must keep.
STRUCTURE_SUCCESS_RATIO = 0.5


@dataclass(frozen=True, slots=True)
class FileValidation:
    syntax_valid: bool
    imports_resolve: bool
    structure_preserved: float
    success: bool


@dataclass(frozen=True, slots=True)
class ValidationSummary:
    """Per-migration rates, each in ``[0, 1]``."""

    syntax_valid_rate: float = 0.0
    imports_resolve_rate: float = 0.0
    structure_preserved_rate: float = 0.0
    success_rate: float = 0.0


# ---------------------------------------------------------------------------
# Syntax
# ---------------------------------------------------------------------------


def brackets_balanced(source: str, *, hash_comments: bool = False) -> bool:
    """True when (), [] and {} nest correctly outside strings and comments."""
    stack: list[str] = []
    i = 0
    n = len(source)
    while i < n:
        ch = source[i]
        nxt = source[i + 1] if i + 1 < n else ""
        if ch in "\"'`":
            i = _skip_string(source, i)
            continue
        if ch == "/" and nxt == "/" or (hash_comments and ch == "#"):
            end = source.find("\n", i)
            i = n if end == -1 else end + 1
            continue
        if ch == "/" and nxt == "*":
            end = source.find("*/", i + 2)
            if end == -1:
                return False
            i = end + 2
            continue
        if ch in "([{":
            stack.append(ch)
        elif ch in _PAIRS:
            if not stack or stack.pop() != _PAIRS[ch]:
                return False
        i += 1
    return not stack


def _skip_string(source: str, start: int) -> int:
    quote = source[start]
    if source.startswith(quote * 3, start):
        end = source.find(quote * 3, start + 3)
        return len(source) if end == -1 else end + 3
    i = start + 1
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        if ch == "\n" and quote != "`":
            return i + 1
        i += 1
    return i


def syntax_valid(content: str, language: str) -> bool:
    """Cheap per-language syntax check."""
    if not content.strip():
        return False
    lang = normalize_language(language)
    if lang == "python":
        try:
            ast.parse(content)
        except (SyntaxError, ValueError):
            return False
        return True
    if not brackets_balanced(content, hash_comments=lang in _HASH_COMMENT_LANGUAGES):
        return False
    if lang == "go":
        return re.search(r"^\s*package\s+\w+", content, re.MULTILINE) is not None
    return True


# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------


def local_imports(content: str, language: str) -> list[str]:
    """Relative import targets of *content*; absolute ones are assumed installable."""
    patterns = _IMPORT_PATTERNS.get(normalize_language(language), ())
    return [m.group(1) for p in patterns for m in p.finditer(content) if m.group(1).startswith(".")]


def imports_resolve(
    content: str, language: str, filename: str, produced: Collection[str]
) -> bool:
    """True when every relative import points at one of the *produced* files."""
    targets = local_imports(content, language)
    if not targets:
        return True
    stems = {posixpath.splitext(posixpath.normpath(p))[0] for p in produced}
    basenames = {posixpath.basename(s) for s in stems}
    base_dir = posixpath.dirname(filename)
    lang = normalize_language(language)
    for target in targets:
        if lang == "python":
            dots = len(target) - len(target.lstrip("."))
            module = target[dots:].replace(".", "/")
            if not module:
                continue
            candidate = posixpath.normpath(posixpath.join(base_dir, *([".."] * (dots - 1)), module))
        else:
            candidate = posixpath.splitext(posixpath.normpath(posixpath.join(base_dir, target)))[0]
        if candidate not in stems and posixpath.basename(candidate) not in basenames:
            return False
    return True


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


def _normalize_name(name: str) -> str:
    return re.sub(r"[^0-9a-z]", "", name.rsplit(".", 1)[-1].lower())


def structure_preserved(original_names: Iterable[str], content: str) -> float:
    """Fraction of *original_names* still declared or referenced in *content*."""
    wanted = {_normalize_name(n) for n in original_names if n and "@" not in n}
    wanted.discard("")
    if not wanted:
        return 1.0
    present = {_normalize_name(tok) for tok in _IDENTIFIER.findall(content)}
    return len(wanted & present) / len(wanted)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def validate_file(
    content: str,
    *,
    language: str,
    filename: str,
    original_names: Iterable[str],
    produced: Collection[str],
) -> FileValidation:
    syntax = syntax_valid(content, language)
    resolved = imports_resolve(content, language, filename, produced)
    structure = structure_preserved(original_names, content)
    return FileValidation(
        syntax_valid=syntax,
        imports_resolve=resolved,
        structure_preserved=structure,
        success=syntax and resolved and structure >= STRUCTURE_SUCCESS_RATIO,
    )


def summarize(validations: list[FileValidation]) -> ValidationSummary:
    if not validations:
        return ValidationSummary()
    n = len(validations)
    return ValidationSummary(
        syntax_valid_rate=sum(v.syntax_valid for v in validations) / n,
        imports_resolve_rate=sum(v.imports_resolve for v in validations) / n,
        structure_preserved_rate=sum(v.structure_preserved for v in validations) / n,
        success_rate=sum(v.success for v in validations) / n,
    )
