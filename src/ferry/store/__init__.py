"""Persistence — jobs, chunks, uploaded files and vector ranking."""

from ferry.store.chunks import ChunkStore
from ferry.store.dialect import get_dialect, insert_ignore
from ferry.store.files import FileStore
from ferry.store.jobs import JobStore, error_fields
from ferry.store.vectors import ScoredChunk, UsearchVectorIndex, cosine, rank

__all__ = [
    "ChunkStore",
    "FileStore",
    "JobStore",
    "ScoredChunk",
    "UsearchVectorIndex",
    "cosine",
    "error_fields",
    "get_dialect",
    "insert_ignore",
    "rank",
]
