"""Configuration dataclasses with pipeline defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

_DEFAULT_WORKSPACE_ROOT = Path.home() / ".ferry" / "workspaces"

MiB = 1024 * 1024
GiB = 1024 * MiB

DEFAULT_INCLUDE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".vue",
        ".py", ".java", ".kt", ".scala", ".go", ".rs", ".rb", ".php",
        ".c", ".h", ".cpp", ".hpp", ".cc", ".cs", ".swift", ".m",
        ".dart", ".lua", ".pl", ".clj", ".hs", ".ml", ".fs",
        ".sh", ".bash", ".zsh", ".fish", ".ps1", ".bat", ".cmd",
        ".html", ".css", ".scss", ".sql", ".json", ".xml", ".yaml", ".yml",
        ".md", ".txt",
    }
)  # fmt: skip

DEFAULT_EXCLUDE_SEGMENTS: frozenset[str] = frozenset(
    {
        "node_modules", ".git", "__MACOSX", ".DS_Store", "dist", "build",
        "coverage", ".nyc_output", "logs", "tmp", "temp",
    }
)  # fmt: skip

_JS_KINDS = frozenset(
    {
        "function_declaration", "generator_function_declaration", "class_declaration",
        "method_definition", "lexical_declaration", "variable_declaration",
        "import_statement", "export_statement", "try_statement", "if_statement",
        "for_statement", "for_in_statement", "while_statement", "do_statement",
        "switch_statement",
    }
)  # fmt: skip

DEFAULT_CHUNKABLE_TYPES: dict[str, frozenset[str]] = {
    "python": frozenset(
        {
            "FunctionDef", "AsyncFunctionDef", "ClassDef", "Import", "ImportFrom",
            "Assign", "AnnAssign", "TypeAlias", "Try", "TryStar", "If", "For", "AsyncFor",
            "While", "Match",
        }
    ),
    "javascript": _JS_KINDS,
    "typescript": _JS_KINDS
    | {
        "interface_declaration", "type_alias_declaration", "enum_declaration",
        "abstract_class_declaration",
    },
    "go": frozenset(
        {
            "function_declaration", "method_declaration", "type_declaration",
            "import_declaration", "var_declaration", "const_declaration",
        }
    ),
    "java": frozenset(
        {
            "class_declaration", "interface_declaration", "enum_declaration",
            "record_declaration", "method_declaration", "constructor_declaration",
            "import_declaration", "field_declaration",
        }
    ),
}  # fmt: skip


@dataclass(frozen=True, slots=True)
class ExtractorPolicy:
    """Archive extraction caps and filters."""

    max_files: int = 500
    max_file_bytes: int = 50 * MiB
    max_total_bytes: int = 2 * GiB
    include_extensions: frozenset[str] = DEFAULT_INCLUDE_EXTENSIONS
    exclude_path_segments: frozenset[str] = DEFAULT_EXCLUDE_SEGMENTS


@dataclass(frozen=True, slots=True)
class ChunkerPolicy:
    """Per-language sets of syntax node kinds that become chunks.

    Languages without a grammar are cut into windows of at most
    *text_window_lines* lines.
    """

    chunkable_types_by_language: dict[str, frozenset[str]] = field(
        default_factory=lambda: dict(DEFAULT_CHUNKABLE_TYPES)
    )
    text_window_lines: int = 500


@dataclass(frozen=True, slots=True)
class EmbeddingPolicy:
    """Batching, retry and fallback settings for the embedding client.

    *dimension* pins the vector length up front; when ``None`` it is read
    from the first successful provider response.  Dummy vectors drawn
    before the dimension is known use *default_dimension*.
    """

    model: str = "text-embedding-3-small"
    batch_size: int = 5
    inter_delay: float = 0.2
    concurrency: int | None = None
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    dimension: int | None = None
    default_dimension: int = 768
    allow_dummy_fallback: bool = True

    @property
    def effective_concurrency(self) -> int:
        return self.concurrency if self.concurrency is not None else self.batch_size


@dataclass(frozen=True, slots=True)
class RetrievalPolicy:
    default_k: int = 20
    default_threshold: float = 0.7
    neighbor_limit: int = 3
    use_native_index: bool = False


@dataclass(frozen=True, slots=True)
class Deadlines:
    """Per-call deadlines in seconds."""

    download: float = 30.0
    embedding: float = 60.0
    generation: float = 180.0


@dataclass(frozen=True, slots=True)
class ProcessorPolicy:
    """Background processor scheduling knobs."""

    max_concurrent_jobs: int = 2
    poll_interval: float = 5.0
    stale_claim_timeout: float = 30 * 60.0
    download_concurrency: int = 4
    grace_period: float = 5.0
    download_failure_ratio: float = 0.25
    find_limit: int = 10


@dataclass(frozen=True, slots=True)
class FerryConfig:
    """Aggregate configuration passed explicitly to every component."""

    database_url: str = "sqlite+aiosqlite:///ferry.db"
    workspace_root: Path = _DEFAULT_WORKSPACE_ROOT
    generation_model: str = "gpt-4o-mini"
    embedding_credentials: tuple[str, ...] = ()
    extractor: ExtractorPolicy = field(default_factory=ExtractorPolicy)
    chunker: ChunkerPolicy = field(default_factory=ChunkerPolicy)
    embedding: EmbeddingPolicy = field(default_factory=EmbeddingPolicy)
    retrieval: RetrievalPolicy = field(default_factory=RetrievalPolicy)
    deadlines: Deadlines = field(default_factory=Deadlines)
    processor: ProcessorPolicy = field(default_factory=ProcessorPolicy)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> FerryConfig:
        """Build a config from ``FERRY_*`` environment variables.

        Credentials come from ``FERRY_EMBEDDING_API_KEYS`` (comma-separated),
        else from ``OPENAI_API_KEY`` followed by ``OPENAI_API_KEY_2`` ..
        ``OPENAI_API_KEY_5``.  Keyword *overrides* win over the environment.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}

        if "FERRY_DATABASE_URL" in env:
            kwargs["database_url"] = env["FERRY_DATABASE_URL"]
        if "FERRY_WORKSPACE_ROOT" in env:
            kwargs["workspace_root"] = Path(env["FERRY_WORKSPACE_ROOT"])
        if "FERRY_GENERATION_MODEL" in env:
            kwargs["generation_model"] = env["FERRY_GENERATION_MODEL"]

        kwargs["embedding_credentials"] = _credentials_from_env(env)

        embedding = EmbeddingPolicy()
        if "FERRY_EMBEDDING_MODEL" in env:
            embedding = replace(embedding, model=env["FERRY_EMBEDDING_MODEL"])
        if "FERRY_EMBEDDING_DIMENSION" in env:
            embedding = replace(embedding, dimension=int(env["FERRY_EMBEDDING_DIMENSION"]))
        if "FERRY_ALLOW_DUMMY_FALLBACK" in env:
            allow = env["FERRY_ALLOW_DUMMY_FALLBACK"].strip().lower() in ("1", "true", "yes")
            embedding = replace(embedding, allow_dummy_fallback=allow)
        kwargs["embedding"] = embedding

        processor = ProcessorPolicy()
        if "FERRY_MAX_CONCURRENT_JOBS" in env:
            processor = replace(processor, max_concurrent_jobs=int(env["FERRY_MAX_CONCURRENT_JOBS"]))
        if "FERRY_POLL_INTERVAL" in env:
            processor = replace(processor, poll_interval=float(env["FERRY_POLL_INTERVAL"]))
        kwargs["processor"] = processor

        kwargs.update(overrides)
        return cls(**kwargs)


def _credentials_from_env(env: Any) -> tuple[str, ...]:
    pooled = env.get("FERRY_EMBEDDING_API_KEYS", "")
    if pooled.strip():
        return tuple(k.strip() for k in pooled.split(",") if k.strip())

    keys: list[str] = []
    first = env.get("OPENAI_API_KEY")
    if first:
        keys.append(first)
    for i in range(2, 6):
        key = env.get(f"OPENAI_API_KEY_{i}")
        if key:
            keys.append(key)
    return tuple(keys)
