"""
Document intake: turn uploaded GDS exports and pasted e-ticket emails into
Document objects the orchestrator can process.
"""

import hashlib
from pathlib import Path
from typing import Optional

from utils.errors import ValidationFailure
from utils.schemas import Document, DocumentKind

ALLOWED_SUFFIXES = (".txt", ".csv", ".xml")

# Checked in order; the first marker found in the filename wins.
GDS_MARKERS = (
    ("amadeus", ("amadeus", "1a")),
    ("sabre", ("sabre", "aa")),
    ("galileo", ("galileo", "1g")),
)
DEFAULT_GDS_SOURCE = "amadeus"


def detect_gds_source(filename: str) -> str:
    lower = filename.lower()
    for source, markers in GDS_MARKERS:
        if any(marker in lower for marker in markers):
            return source
    return DEFAULT_GDS_SOURCE


def is_supported_file(path: Path) -> bool:
    return path.suffix.lower() in ALLOWED_SUFFIXES


def _truncate(text: str, budget: int) -> tuple[str, bool]:
    if len(text) <= budget:
        return text, False
    return text[:budget], True


def document_from_text(
    name: str,
    content: str,
    char_budget: int,
    *,
    kind: DocumentKind = DocumentKind.GDS_FILE,
    identity: Optional[str] = None,
) -> Document:
    """Build a document from text that was already read or pasted."""
    if not content.strip():
        raise ValidationFailure(f"Document {name!r} is empty")

    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    text, truncated = _truncate(content, char_budget)
    source = "email" if kind is DocumentKind.EMAIL else detect_gds_source(name)

    return Document(
        identity=identity or f"{kind.value}:{digest}",
        name=name,
        kind=kind,
        content=text,
        gds_source=source,
        truncated=truncated,
    )


def document_from_file(path: Path, char_budget: int) -> Document:
    """Read a GDS export from disk.

    Raises:
        ValidationFailure: unsupported file type or empty file
    """
    if not is_supported_file(path):
        raise ValidationFailure(
            f"Unsupported file {path.name!r}: please upload .txt, .csv, or .xml files only"
        )

    raw = path.read_bytes()
    digest = hashlib.sha256(raw).hexdigest()
    content = raw.decode("utf-8", errors="replace")

    document = document_from_text(
        path.name,
        content,
        char_budget,
        identity=f"{DocumentKind.GDS_FILE.value}:{digest}",
    )
    return document.model_copy(update={"path": path})


def document_from_email(content: str, char_budget: int) -> Document:
    return document_from_text(
        "pasted-email",
        content.strip(),
        char_budget,
        kind=DocumentKind.EMAIL,
    )
