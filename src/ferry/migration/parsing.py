"""Parse generation model replies into migrated file records."""

from __future__ import annotations

import json
import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any

from ferry.exceptions import GenerationFailedError
from ferry.ingest.classifier import extension_for

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?[ \t]*\n(.*?)\n[ \t]*```", re.DOTALL)
_FENCED_CODE = re.compile(r"```[\w+#.-]*[ \t]*\n(.*?)\n[ \t]*```", re.DOTALL)


@dataclass(frozen=True, slots=True)
class MigratedFile:
    original_filename: str
    migrated_filename: str
    content: str


@dataclass(slots=True)
class ParsedResponse:
    files: list[MigratedFile]
    summary: str = ""
    changes: list[str] = field(default_factory=list)


def migrated_name(original: str, target: str) -> str:
    """*original* with its extension replaced by the target language's."""
    ext = extension_for(target) if target else ""
    if not ext:
        return original
    root, _ = posixpath.splitext(original)
    return root + ext


def _load_json(text: str) -> dict[str, Any] | None:
    candidates = [m.group(1) for m in _FENCED_JSON.finditer(text)]
    stripped = text.strip()
    if stripped.startswith("{"):
        candidates.append(stripped)
    for raw in candidates:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            # Replies sometimes wrap a fenced JSON document inside migratedCode.
            inner = data.get("migratedCode")
            if isinstance(inner, str) and inner.lstrip().startswith("```"):
                nested = _load_json(inner)
                if nested is not None:
                    return nested
            return data
    return None


def parse_response(text: str, *, target: str, default_original: str) -> ParsedResponse:
    """Extract migrated files from a model reply.

    Accepts fenced or bare JSON with a ``files`` list, then a JSON object
    with only ``migratedCode``, then the first fenced code block.  A JSON
    ``error`` reply raises :class:`GenerationFailedError`.
    """
    if not text or not text.strip():
        msg = "Generation model returned an empty reply"
        raise GenerationFailedError(msg)

    data = _load_json(text)
    if data is not None:
        if "error" in data and not data.get("files") and not data.get("migratedCode"):
            reason = data.get("reason") or data.get("error")
            msg = f"Model declined the migration: {reason}"
            raise GenerationFailedError(msg)
        files = _files_from(data.get("files"), target)
        code = data.get("migratedCode")
        if not files and isinstance(code, str) and code.strip():
            files = [MigratedFile(default_original, migrated_name(default_original, target), code)]
        if files:
            changes = data.get("changes")
            return ParsedResponse(
                files=files,
                summary=str(data.get("summary") or ""),
                changes=[str(c) for c in changes] if isinstance(changes, list) else [],
            )

    match = _FENCED_CODE.search(text)
    if match is None:
        msg = "Generation reply contained neither JSON nor a code block"
        raise GenerationFailedError(msg)
    logger.debug("Falling back to first fenced code block")
    return ParsedResponse(
        files=[MigratedFile(default_original, migrated_name(default_original, target), match.group(1))]
    )


def _files_from(raw: Any, target: str) -> list[MigratedFile]:
    if not isinstance(raw, list):
        return []
    files: list[MigratedFile] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        original = item.get("filename") or item.get("originalFilename")
        if not isinstance(content, str) or not content.strip() or not original:
            continue
        migrated = item.get("migratedFilename") or migrated_name(str(original), target)
        files.append(MigratedFile(str(original), str(migrated), content))
    return files
