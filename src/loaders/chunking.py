from __future__ import annotations

"""Text normalization and separator-aware chunking."""

import re

from src.rag.types import Document

_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", " ", "")


def normalize_text(text: str) -> str:
    """Normalize whitespace and line endings in text."""
    return _WHITESPACE_RE.sub(" ", text.replace("\r\n", "\n")).strip()


def _hard_split(text: str, max_chars: int) -> list[str]:
    return [text[start : start + max_chars] for start in range(0, len(text), max_chars)]


def _split(text: str, max_chars: int, separators: tuple[str, ...]) -> list[str]:
    """Split on the coarsest separator present, recursing into oversized pieces."""
    if len(text) <= max_chars:
        return [text]
    for index, separator in enumerate(separators):
        if separator == "":
            return _hard_split(text, max_chars)
        if separator not in text:
            continue
        parts = text.split(separator)
        pieces: list[str] = []
        for position, part in enumerate(parts):
            piece = part + separator if position < len(parts) - 1 else part
            if not piece:
                continue
            if len(piece) > max_chars:
                pieces.extend(_split(piece, max_chars, separators[index + 1 :]))
            else:
                pieces.append(piece)
        return pieces
    return _hard_split(text, max_chars)


def _merge(pieces: list[str], max_chars: int, overlap: int) -> list[str]:
    chunks: list[str] = []
    window: list[str] = []
    size = 0
    for piece in pieces:
        if window and size + len(piece) > max_chars:
            chunks.append("".join(window))
            # Keep a tail of the previous chunk as overlap.
            while window and (size > overlap or size + len(piece) > max_chars):
                size -= len(window.pop(0))
        window.append(piece)
        size += len(piece)
    if window:
        chunks.append("".join(window))
    return chunks


def chunk_text(
    text: str,
    max_chars: int,
    overlap: int,
    separators: tuple[str, ...] = DEFAULT_SEPARATORS,
) -> list[str]:
    """Split text into overlapping chunks, preferring paragraph and sentence breaks."""
    cleaned = text.replace("\r\n", "\n").strip()
    if not cleaned:
        return []
    if max_chars <= 0:
        return [cleaned]
    if overlap >= max_chars:
        overlap = max(0, max_chars // 4)
    pieces = _split(cleaned, max_chars, separators)
    return [chunk.strip() for chunk in _merge(pieces, max_chars, overlap) if chunk.strip()]


def chunk_document(document: Document, max_chars: int, overlap: int) -> list[Document]:
    """Chunk a document into Document records carrying chunk index metadata."""
    chunks = [normalize_text(chunk) for chunk in chunk_text(document.content, max_chars, overlap)]
    chunks = [chunk for chunk in chunks if chunk]
    total = len(chunks)
    documents: list[Document] = []
    for idx, chunk in enumerate(chunks):
        metadata = dict(document.metadata)
        metadata.update({"chunk_index": idx, "chunk_count": total})
        documents.append(
            Document(
                doc_id=f"{document.doc_id}-{idx}",
                content=chunk,
                metadata=metadata,
            )
        )
    return documents
