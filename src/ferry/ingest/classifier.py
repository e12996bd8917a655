"""LanguageClassifier — two-level (extension, then content) language detection."""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass

from ferry.exceptions import UnrecognizedError

logger = logging.getLogger(__name__)

_UNAMBIGUOUS_CONFIDENCE = 0.95
_AMBIGUOUS_CONFIDENCE = 0.5
_CONTENT_SAMPLE_CHARS = 16_384

# ---------------------------------------------------------------------------
# Extension table
# ---------------------------------------------------------------------------

_EXTENSIONS: dict[str, tuple[str, ...]] = {
    ".py": ("python",),
    ".pyi": ("python",),
    ".js": ("javascript",),
    ".jsx": ("javascript",),
    ".mjs": ("javascript",),
    ".cjs": ("javascript",),
    ".ts": ("typescript",),
    ".tsx": ("typescript",),
    ".mts": ("typescript",),
    ".cts": ("typescript",),
    ".vue": ("vue",),
    ".go": ("go",),
    ".java": ("java",),
    ".kt": ("kotlin",),
    ".scala": ("scala",),
    ".rs": ("rust",),
    ".rb": ("ruby",),
    ".php": ("php",),
    ".cs": ("csharp",),
    ".swift": ("swift",),
    ".c": ("c",),
    ".cpp": ("cpp",),
    ".cc": ("cpp",),
    ".hpp": ("cpp",),
    ".dart": ("dart",),
    ".lua": ("lua",),
    ".clj": ("clojure",),
    ".hs": ("haskell",),
    ".ml": ("ocaml",),
    ".fs": ("fsharp",),
    ".sh": ("shell",),
    ".bash": ("shell",),
    ".zsh": ("shell",),
    ".fish": ("shell",),
    ".ps1": ("powershell",),
    ".bat": ("batch",),
    ".cmd": ("batch",),
    ".sql": ("sql",),
    ".css": ("css",),
    ".scss": ("scss",),
    ".json": ("json",),
    ".xml": ("xml",),
    ".yaml": ("yaml",),
    ".yml": ("yaml",),
    ".md": ("markdown",),
    ".txt": ("text",),
    # Ambiguous: several languages share these extensions.
    ".h": ("c", "cpp", "objective-c"),
    ".m": ("objective-c", "matlab"),
    ".pl": ("perl", "prolog"),
    ".html": ("html", "angularjs-template"),
    "": ("shell", "text"),
}

_PRIMARY_EXTENSION: dict[str, str] = {
    "python": ".py",
    "javascript": ".js",
    "typescript": ".ts",
    "go": ".go",
    "java": ".java",
    "kotlin": ".kt",
    "scala": ".scala",
    "rust": ".rs",
    "ruby": ".rb",
    "php": ".php",
    "csharp": ".cs",
    "swift": ".swift",
    "c": ".c",
    "cpp": ".cpp",
    "dart": ".dart",
    "lua": ".lua",
    "shell": ".sh",
    "sql": ".sql",
    "vue": ".vue",
}

_ALIASES: dict[str, str] = {
    "py": "python",
    "python3": "python",
    "js": "javascript",
    "node": "javascript",
    "nodejs": "javascript",
    "ts": "typescript",
    "golang": "go",
    "c#": "csharp",
    "cs": "csharp",
    "c++": "cpp",
    "rb": "ruby",
    "rs": "rust",
    "kt": "kotlin",
    "bash": "shell",
    "sh": "shell",
}


def normalize_language(label: str) -> str:
    """Map a user-facing language label (``"Go"``, ``"golang"``, ``"TS"``) to its id."""
    key = label.strip().lower()
    return _ALIASES.get(key, key)


def extension_for(language: str) -> str:
    """Return the conventional file extension for *language* (``""`` if unknown)."""
    return _PRIMARY_EXTENSION.get(normalize_language(language), "")


def is_binary(content: str | bytes) -> bool:
    """Heuristic: NUL bytes or undecodable UTF-8 mark content as binary."""
    if isinstance(content, bytes):
        if b"\x00" in content[:_CONTENT_SAMPLE_CHARS]:
            return True
        try:
            content.decode("utf-8")
        except UnicodeDecodeError:
            return True
        return False
    return "\x00" in content[:_CONTENT_SAMPLE_CHARS]


# ---------------------------------------------------------------------------
# Content rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _LanguageRule:
    language: str
    patterns: tuple[re.Pattern[str], ...]


@dataclass(frozen=True, slots=True)
class _FrameworkRule:
    framework: str
    languages: frozenset[str]
    extensions: frozenset[str]
    patterns: tuple[re.Pattern[str], ...]
    priority: int


def _rx(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.MULTILINE) for p in patterns)


# Ordered: earlier rules win ties.
_LANGUAGE_RULES: tuple[_LanguageRule, ...] = (
    _LanguageRule("python", _rx(r"\A#!.*\bpython", r"^\s*def \w+\(.*\)\s*(->.*)?:\s*$", r"^\s*from [\w.]+ import ", r"^if __name__ == ['\"]__main__['\"]")),
    _LanguageRule("javascript", _rx(r"\A#!.*\bnode\b", r"\brequire\(['\"][^'\"]+['\"]\)", r"\bmodule\.exports\b", r"^\s*const \w+ = ")),
    _LanguageRule("typescript", _rx(r"^\s*interface \w+\s*\{", r":\s*(string|number|boolean)\b", r"^\s*export type \w+ =", r"^\s*import type ")),
    _LanguageRule("shell", _rx(r"\A#!.*\b(ba|z|da)?sh\b", r"^\s*(export \w+=|echo )", r"\$\{?\w+\}?")),
    _LanguageRule("ruby", _rx(r"\A#!.*\bruby", r"^\s*require ['\"]", r"^\s*def \w+\s*$", r"^\s*end\s*$")),
    _LanguageRule("perl", _rx(r"\A#!.*\bperl", r"^\s*use strict;", r"^\s*my \$\w+")),
    _LanguageRule("go", _rx(r"^package \w+\s*$", r"^func ", r"^import \(")),
    _LanguageRule("java", _rx(r"^\s*import java\.", r"^\s*public (final )?class \w+", r"^package [\w.]+;")),
    _LanguageRule("csharp", _rx(r"^\s*using System", r"^\s*namespace [\w.]+", r"\bpublic (partial )?class \w+")),
    _LanguageRule("rust", _rx(r"^\s*use \w+::", r"^\s*(pub )?fn \w+", r"\blet mut \w+")),
    _LanguageRule("php", _rx(r"<\?php", r"\$this->", r"^\s*namespace [\w\\]+;")),
    _LanguageRule("cpp", _rx(r"#include <(iostream|vector|string|memory)>", r"\bstd::", r"^\s*(class|namespace) \w+")),
    _LanguageRule("c", _rx(r"#include <(stdio|stdlib|string)\.h>", r"\bprintf\(", r"\bmalloc\(")),
    _LanguageRule("objective-c", _rx(r"^\s*@(interface|implementation) \w+", r"^\s*#import ", r"\[\w+ \w+\]")),
    _LanguageRule("matlab", _rx(r"^\s*function .*= *\w+\(", r"^\s*%", r"\bend\s*$")),
    _LanguageRule("html", _rx(r"<!DOCTYPE html>", r"<html\b", r"<(div|body|head)\b")),
)  # fmt: skip

_FRAMEWORK_RULES: tuple[_FrameworkRule, ...] = (
    _FrameworkRule("vue", frozenset({"vue", "javascript", "typescript"}), frozenset({".vue"}), _rx(r"<template>", r"import .* from ['\"]vue['\"]", r"\bv-(model|if|for)=", r"\bdefineComponent\(", r"\bsetup\s*\(\s*\)"), 95),
    _FrameworkRule("react", frozenset({"javascript", "typescript"}), frozenset({".jsx", ".tsx"}), _rx(r"import .* from ['\"]react['\"]", r"\buse(State|Effect|Memo|Callback)\s*\(", r"React\.Component", r"className=", r"<[A-Z]\w+[^>]*>"), 90),
    _FrameworkRule("angular", frozenset({"typescript"}), frozenset({".ts"}), _rx(r"@Component\s*\(", r"@Injectable\s*\(", r"@NgModule\s*\(", r"from ['\"]@angular/core['\"]", r"ngOnInit\s*\("), 85),
    _FrameworkRule("nestjs", frozenset({"typescript"}), frozenset({".ts"}), _rx(r"from ['\"]@nestjs/", r"@Controller\s*\(", r"@Module\s*\(", r"NestFactory\.create"), 86),
    _FrameworkRule("express", frozenset({"javascript", "typescript"}), frozenset({".js", ".ts"}), _rx(r"require\(['\"]express['\"]\)|from ['\"]express['\"]", r"\bapp\.(get|post|put|delete)\s*\(", r"\bres\.(json|send|render)\s*\(", r"\bapp\.listen\s*\("), 80),
    _FrameworkRule("jquery", frozenset({"javascript"}), frozenset({".js"}), _rx(r"\$\(document\)\.ready", r"\$\(this\)", r"\.ajax\s*\("), 70),
    _FrameworkRule("fastapi", frozenset({"python"}), frozenset({".py"}), _rx(r"from fastapi import", r"FastAPI\s*\(", r"@\w+\.(get|post|put|delete)\(\s*['\"]/"), 90),
    _FrameworkRule("django", frozenset({"python"}), frozenset({".py"}), _rx(r"from django", r"models\.Model\b", r"HttpResponse|JsonResponse", r"urlpatterns\s*="), 85),
    _FrameworkRule("flask", frozenset({"python"}), frozenset({".py"}), _rx(r"from flask import", r"Flask\s*\(__name__\)", r"@\w+\.route\(", r"render_template\s*\("), 85),
    _FrameworkRule("spring", frozenset({"java", "kotlin"}), frozenset({".java", ".kt"}), _rx(r"import org\.springframework", r"@SpringBootApplication", r"@RestController", r"@(Get|Post)Mapping"), 90),
    _FrameworkRule("gin", frozenset({"go"}), frozenset({".go"}), _rx(r"github\.com/gin-gonic/gin", r"gin\.(Default|New)\(\)", r"\*gin\.Context"), 90),
    _FrameworkRule("echo", frozenset({"go"}), frozenset({".go"}), _rx(r"github\.com/labstack/echo", r"echo\.New\(\)", r"echo\.Context"), 88),
    _FrameworkRule("fiber", frozenset({"go"}), frozenset({".go"}), _rx(r"github\.com/gofiber/fiber", r"fiber\.New\(", r"\*fiber\.Ctx"), 88),
    _FrameworkRule("rails", frozenset({"ruby"}), frozenset({".rb"}), _rx(r"< ApplicationController", r"< (ApplicationRecord|ActiveRecord::Base)", r"\b(has_many|belongs_to)\b", r"\bbefore_action\b"), 90),
    _FrameworkRule("laravel", frozenset({"php"}), frozenset({".php"}), _rx(r"use Illuminate\\", r"\b(Route|Schema|Artisan)::", r"extends (Controller|Model)\b"), 85),
    _FrameworkRule("wordpress", frozenset({"php"}), frozenset({".php"}), _rx(r"\bwp_\w+\(", r"\badd_(action|filter)\s*\(", r"\$wpdb"), 90),
    _FrameworkRule("rocket", frozenset({"rust"}), frozenset({".rs"}), _rx(r"use rocket::", r"#\[(get|post|launch)\b", r"rocket::build\(\)"), 90),
    _FrameworkRule("actix", frozenset({"rust"}), frozenset({".rs"}), _rx(r"use actix_web", r"HttpServer::new", r"#\[actix_web::main\]"), 90),
)  # fmt: skip


@dataclass(frozen=True, slots=True)
class Classification:
    """Language label with optional framework and ranked alternatives."""

    language: str
    framework: str | None
    confidence: float
    alternatives: tuple[tuple[str, float], ...] = ()


class LanguageClassifier:
    """Classifies files by extension first, then by content signatures.

    Content evidence may set or upgrade the framework.  It may change the
    language only when the extension is ambiguous or unknown.
    """

    def classify(self, filename: str, content: str | bytes | None = None) -> Classification:
        extension = _extension_of(filename)
        candidates = _EXTENSIONS.get(extension)
        text = _as_text(content)

        content_scores = _score_languages(text) if text else {}

        if candidates is not None and len(candidates) == 1:
            language = candidates[0]
            confidence = _UNAMBIGUOUS_CONFIDENCE
            alternatives = {k: round(v * 0.5, 3) for k, v in content_scores.items() if k != language}
        elif candidates is not None:
            ranked = sorted(
                candidates,
                key=lambda c: (-content_scores.get(c, 0.0), candidates.index(c)),
            )
            language = ranked[0]
            score = content_scores.get(language, 0.0)
            confidence = round(min(0.85, _AMBIGUOUS_CONFIDENCE + 0.35 * score), 3)
            alternatives = {c: round(_AMBIGUOUS_CONFIDENCE * 0.5, 3) for c in ranked[1:]}
            # Content strongly pointing outside the candidate list still wins.
            best_other = _best(content_scores, exclude=set(candidates))
            if best_other is not None and best_other[1] > score and best_other[1] >= 0.5:
                alternatives[language] = confidence
                language = best_other[0]
                confidence = round(min(0.85, 0.4 + 0.4 * best_other[1]), 3)
                alternatives.pop(language, None)
        else:
            best = _best(content_scores)
            if best is None:
                msg = f"Cannot classify {filename!r}: unknown extension and no content signature"
                raise UnrecognizedError(msg)
            language = best[0]
            confidence = round(min(0.8, 0.3 + 0.5 * best[1]), 3)
            alternatives = {k: round(0.3 + 0.5 * v, 3) for k, v in content_scores.items() if k != language}

        framework = None
        if text:
            fw = _best_framework(text, language, extension)
            if fw is not None:
                framework = fw[0]

        ordered = tuple(
            sorted(
                ((k, v) for k, v in alternatives.items() if v > 0),
                key=lambda kv: (-kv[1], kv[0]),
            )
        )
        return Classification(
            language=language,
            framework=framework,
            confidence=confidence,
            alternatives=ordered,
        )

    def extension_language(self, filename: str) -> str | None:
        """Return the unambiguous language for *filename*'s extension, if any."""
        candidates = _EXTENSIONS.get(_extension_of(filename))
        if candidates is None or len(candidates) != 1:
            return None
        return candidates[0]


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def _extension_of(filename: str) -> str:
    return posixpath.splitext(posixpath.basename(filename.replace("\\", "/")))[1].lower()


def _as_text(content: str | bytes | None) -> str:
    if content is None or is_binary(content):
        return ""
    if isinstance(content, bytes):
        content = content.decode("utf-8")
    return content[:_CONTENT_SAMPLE_CHARS]


def _score_languages(text: str) -> dict[str, float]:
    scores: dict[str, float] = {}
    for rule in _LANGUAGE_RULES:
        hits = sum(1 for p in rule.patterns if p.search(text))
        if hits:
            scores[rule.language] = hits / len(rule.patterns)
    return scores


def _best(scores: dict[str, float], exclude: set[str] | None = None) -> tuple[str, float] | None:
    best: tuple[str, float] | None = None
    for rule in _LANGUAGE_RULES:
        lang = rule.language
        if lang not in scores or (exclude and lang in exclude):
            continue
        if best is None or scores[lang] > best[1]:
            best = (lang, scores[lang])
    return best


def _best_framework(text: str, language: str, extension: str) -> tuple[str, float] | None:
    best: tuple[str, float] | None = None
    for rule in _FRAMEWORK_RULES:
        if language not in rule.languages:
            continue
        hits = sum(1 for p in rule.patterns if p.search(text))
        if not hits or (hits < 2 and extension not in rule.extensions):
            continue
        score = (0.3 if extension in rule.extensions else 0.0) + 0.7 * hits / len(rule.patterns)
        score *= rule.priority / 100
        if best is None or score > best[1]:
            best = (rule.framework, score)
    return best
