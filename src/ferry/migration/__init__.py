"""Migration agent — retrieval, prompting, reply parsing and validation."""

from ferry.migration.agent import MigrationAgent, MigrationOptions, MigrationRequest
from ferry.migration.parsing import MigratedFile, ParsedResponse, migrated_name, parse_response
from ferry.migration.prompts import ContextSnippet, build_prompt, display_name, query_descriptor
from ferry.migration.providers import GenerationProvider, OpenAIGeneration
from ferry.migration.results import MigrationFileResult, MigrationResult, MigrationStats
from ferry.migration.validation import (
    FileValidation,
    ValidationSummary,
    brackets_balanced,
    structure_preserved,
    summarize,
    syntax_valid,
    validate_file,
)

__all__ = [
    "ContextSnippet",
    "FileValidation",
    "GenerationProvider",
    "MigratedFile",
    "MigrationAgent",
    "MigrationFileResult",
    "MigrationOptions",
    "MigrationRequest",
    "MigrationResult",
    "MigrationStats",
    "OpenAIGeneration",
    "ParsedResponse",
    "ValidationSummary",
    "brackets_balanced",
    "build_prompt",
    "display_name",
    "migrated_name",
    "parse_response",
    "query_descriptor",
    "structure_preserved",
    "summarize",
    "syntax_valid",
    "validate_file",
]
