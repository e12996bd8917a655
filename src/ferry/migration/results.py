"""Migration result records.  Returned to the caller, never persisted."""

from __future__ import annotations

from dataclasses import dataclass, field

from ferry.migration.validation import FileValidation, ValidationSummary


@dataclass
class MigrationFileResult:
    original_filename: str
    migrated_filename: str
    content: str
    validation: FileValidation


@dataclass
class MigrationStats:
    retrieved_chunks: int = 0
    context_chunks: int = 0
    contributing_files: int = 0
    produced_files: int = 0
    prompt_chars: int = 0
    duration_seconds: float = 0.0


@dataclass
class MigrationResult:
    """Outcome of one migration request."""

    migration_id: str
    job_id: str
    command: str
    target: str | None
    results: list[MigrationFileResult] = field(default_factory=list)
    stats: MigrationStats = field(default_factory=MigrationStats)
    validation: ValidationSummary = field(default_factory=ValidationSummary)
    summary: str = ""
    changes: list[str] = field(default_factory=list)
