"""
Source document loading. Plain text and markdown are read as UTF-8, PDFs page
by page with pymupdf and Word documents with docx2txt.
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

__all__ = ["SUPPORTED_EXTENSIONS", "load_text"]

SUPPORTED_EXTENSIONS = (".txt", ".md", ".markdown", ".pdf", ".docx")


def load_text(path: Path) -> str:
    """
    Return the raw text of ``path``. Raises ValueError for unsupported file types.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in (".txt", ".md", ".markdown"):
        return path.read_text(encoding="utf-8-sig")
    if suffix == ".pdf":
        return _load_pdf(path)
    if suffix == ".docx":
        return _load_docx(path)
    raise ValueError(
        f"Unsupported file type {suffix or '(none)'}; expected one of {', '.join(SUPPORTED_EXTENSIONS)}."
    )


def _load_pdf(path: Path) -> str:
    import fitz  # pymupdf

    doc = fitz.open(str(path))
    try:
        pages = [doc[page_num].get_text("text") for page_num in range(doc.page_count)]
    finally:
        doc.close()
    logger.info("Extracted text from %d PDF pages of %s", len(pages), path.name)
    return "\n\n".join(page.strip() for page in pages if page.strip())


def _load_docx(path: Path) -> str:
    import docx2txt

    text = docx2txt.process(str(path)) or ""
    logger.info("Extracted %d characters from %s", len(text), path.name)
    return text.strip()
