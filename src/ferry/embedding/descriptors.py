"""Descriptor text — the string actually sent to the embedding model."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ferry.models.chunks import ChunkType

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ferry.models.chunks import Chunk

_NAMED_ROLES: dict[ChunkType, str] = {
    ChunkType.FUNCTION: "This is a function named {name}. ",
    ChunkType.METHOD: "This is a method named {name}. ",
    ChunkType.CLASS: "This is a class named {name}. ",
    ChunkType.INTERFACE: "This is an interface named {name}. ",
    ChunkType.TYPE: "This is a type definition named {name}. ",
    ChunkType.ENUM: "This is an enum named {name}. ",
    ChunkType.VARIABLE: "This is a variable declaration named {name}. ",
    ChunkType.ARROW_FUNCTION: "This is an arrow function named {name}. ",
    ChunkType.GENERATOR: "This is a generator function named {name}. ",
    ChunkType.ASYNC_FUNCTION: "This is an async function named {name}. ",
}

_FIXED_ROLES: dict[ChunkType, str] = {
    ChunkType.IMPORT: "This is an import statement. ",
    ChunkType.EXPORT: "This is an export statement. ",
    ChunkType.TRY_CATCH: "This is an error handling block. ",
    ChunkType.CONDITIONAL: "This is a conditional block. ",
    ChunkType.LOOP: "This is a loop. ",
    ChunkType.SWITCH: "This is a switch statement. ",
}


def role_sentence(chunk_type: ChunkType | str, name: str) -> str:
    """One sentence stating what kind of code the chunk is."""
    kind = ChunkType(chunk_type)
    if kind in _NAMED_ROLES:
        return _NAMED_ROLES[kind].format(name=name)
    if kind in _FIXED_ROLES:
        return _FIXED_ROLES[kind]
    return f"This is a code {kind.value}. "


def build_descriptor(
    chunk_type: ChunkType | str,
    name: str,
    content: str,
    dependencies: Sequence[str] = (),
) -> str:
    """Build ``"<kind> <name>\\n\\n<role>\\nContent: <content>[\\nDependencies: ...]"``."""
    kind = ChunkType(chunk_type)
    text = f"{kind.value} {name}\n\n{role_sentence(kind, name)}\nContent: {content}"
    if dependencies:
        text += f"\nDependencies: {', '.join(dependencies)}"
    return text


def descriptor_for(chunk: Chunk) -> str:
    return build_descriptor(
        chunk.chunk_type,
        chunk.chunk_name,
        chunk.content,
        chunk.metadata_record.dependencies,
    )
