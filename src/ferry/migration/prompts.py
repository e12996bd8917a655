"""Query descriptors and the migration prompt layout."""

from __future__ import annotations

from dataclasses import dataclass
from itertools import groupby

from ferry.ingest.classifier import normalize_language

_DISPLAY_NAMES: dict[str, str] = {
    "python": "Python",
    "javascript": "JavaScript",
    "typescript": "TypeScript",
    "go": "Go",
    "java": "Java",
    "kotlin": "Kotlin",
    "scala": "Scala",
    "rust": "Rust",
    "ruby": "Ruby",
    "php": "PHP",
    "csharp": "C#",
    "swift": "Swift",
    "c": "C",
    "cpp": "C++",
}


def display_name(language: str) -> str:
    """Human name for a language label: ``"golang"`` -> ``"Go"``."""
    lang_id = normalize_language(language)
    return _DISPLAY_NAMES.get(lang_id, language.strip() or lang_id)


def query_descriptor(
    command: str | None, from_lang: str | None = None, to_lang: str | None = None
) -> str:
    """Text embedded to retrieve context for a migration request."""
    if command and command.strip():
        return command.strip()
    if not to_lang:
        msg = "A migration needs a command or a target language"
        raise ValueError(msg)
    if from_lang:
        return f"Convert the following code from {display_name(from_lang)} to {display_name(to_lang)}."
    return f"Convert the following code to {display_name(to_lang)}."


@dataclass(frozen=True, slots=True)
class ContextSnippet:
    """One chunk of retrieved context as it appears in the prompt."""

    file_path: str
    chunk_type: str
    chunk_name: str
    language: str
    content: str
    start_byte: int = 0
    dependencies: tuple[str, ...] = ()


def render_context(snippets: list[ContextSnippet]) -> str:
    """Snippets grouped by file path (sorted), each group in source order."""
    ordered = sorted(snippets, key=lambda s: (s.file_path, s.start_byte))
    blocks: list[str] = []
    for file_path, group in groupby(ordered, key=lambda s: s.file_path):
        items = list(group)
        deps = sorted({d for s in items for d in s.dependencies})
        lines = [f"File: {file_path}", f"Language: {items[0].language}"]
        if deps:
            lines.append(f"Dependencies: {', '.join(deps)}")
        for snippet in items:
            lines.append(f"Type: {snippet.chunk_type} ({snippet.chunk_name})")
            lines.append("Content:")
            lines.append(snippet.content)
        lines.append("---")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_prompt(command: str, target: str, snippets: list[ContextSnippet]) -> str:
    """Assemble the generation prompt.  Stable for a given (command, target, snippets)."""
    target_name = display_name(target) if target else "the requested target"
    return f"""You are an expert code migration assistant. Your task is to help users migrate their code between different programming languages or frameworks.

USER COMMAND: {command}

TARGET: {target_name}

RELEVANT CODE CONTEXT:
{render_context(snippets)}

INSTRUCTIONS:
1. Analyze the provided code context and the user's migration command
2. Produce one migrated file for every source file in the context
3. Maintain the original functionality while adapting to the target language/framework
4. Keep the names of top-level declarations where the target language allows it
5. Include comments explaining the migration changes

RESPONSE FORMAT:
Please provide your response as a JSON object with the following structure:
{{
  "migratedCode": "The migrated code of the main file",
  "summary": "Brief summary of what was migrated",
  "changes": ["List of key changes made"],
  "files": [
    {{
      "filename": "original-filename.ext",
      "migratedFilename": "new-filename.ext",
      "content": "migrated content"
    }}
  ]
}}

If you cannot perform the migration due to insufficient context or unclear requirements, respond with:
{{
  "error": "Unable to migrate",
  "reason": "Explanation of why migration failed",
  "suggestions": ["List of suggestions to help the user"]
}}"""
