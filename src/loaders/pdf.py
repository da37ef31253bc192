from __future__ import annotations

"""PDF text extraction through PyMuPDF."""

import re
from datetime import datetime, timezone
from pathlib import Path

from src.rag.types import Document


class PDFLoaderError(RuntimeError):
    """Raised when PDF loading fails."""
    pass


_INLINE_SPACE_RE = re.compile(r"[ \t\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_HYPHEN_BREAK_RE = re.compile(r"(\w)-\n(\w)")


def clean_pdf_text(text: str) -> str:
    """Join hyphenated line breaks and squeeze whitespace, keeping paragraph breaks."""
    if not text:
        return ""
    cleaned = text.replace("\r\n", "\n").replace("\x00", "")
    cleaned = _HYPHEN_BREAK_RE.sub(r"\1\2", cleaned)
    cleaned = _INLINE_SPACE_RE.sub(" ", cleaned)
    cleaned = "\n".join(line.strip() for line in cleaned.split("\n"))
    return _BLANK_LINES_RE.sub("\n\n", cleaned).strip()


def _open(**kwargs):
    try:
        import fitz
    except ImportError as exc:
        raise PDFLoaderError("PyMuPDF is required to load PDF files") from exc
    try:
        return fitz.open(**kwargs)
    except Exception as exc:
        raise PDFLoaderError(f"Unable to open PDF: {exc}") from exc


def _extract(reader) -> str:
    pages = [page.get_text() or "" for page in reader]
    return clean_pdf_text("\n\n".join(pages))


def _metadata(filename: str, page_count: int) -> dict[str, object]:
    return {
        "filename": filename,
        "page_count": page_count,
        "uploaded_at": datetime.now(timezone.utc).isoformat(),
    }


def load_pdf_file(path: Path, doc_id: str | None = None) -> Document:
    """Load a PDF from disk and return a Document."""
    reader = _open(filename=str(path))
    with reader:
        content = _extract(reader)
        page_count = reader.page_count
    return Document(
        doc_id=doc_id or path.stem,
        content=content,
        metadata=_metadata(path.name, page_count),
    )


def load_pdf_bytes(data: bytes, doc_id: str, filename: str) -> Document:
    """Load an uploaded PDF and return a Document."""
    if not data:
        raise PDFLoaderError("Uploaded PDF is empty")
    reader = _open(stream=data, filetype="pdf")
    with reader:
        content = _extract(reader)
        page_count = reader.page_count
    return Document(doc_id=doc_id, content=content, metadata=_metadata(filename, page_count))
