"""Embedding providers, credential pool, descriptors and the batching client."""

from ferry.embedding.client import (
    EmbeddingClient,
    EmbeddingRunStats,
    dummy_vector,
    is_quota_error,
)
from ferry.embedding.credentials import Credential, CredentialPool, mask
from ferry.embedding.descriptors import build_descriptor, descriptor_for, role_sentence
from ferry.embedding.protocols import EmbeddingProvider
from ferry.embedding.providers import OpenAIEmbedding, openai_provider_factory

__all__ = [
    "Credential",
    "CredentialPool",
    "EmbeddingClient",
    "EmbeddingProvider",
    "EmbeddingRunStats",
    "OpenAIEmbedding",
    "build_descriptor",
    "descriptor_for",
    "dummy_vector",
    "is_quota_error",
    "mask",
    "openai_provider_factory",
    "role_sentence",
]
