"""Turn files on disk into text for the read_file tool.

Structured formats (PDF, Word, notebooks, spreadsheets) go through their
format-specific extractor; everything else is decoded as text with the
encoding detected by charset-normalizer.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from charset_normalizer import from_bytes
from docx import Document as DocxDocument
from openpyxl import load_workbook
from pypdf import PdfReader

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 20 * 1000 * 1024
MAX_SHEET_ROWS = 50_000
_BINARY_SAMPLE = 8192


class FileTooLargeError(ValueError):
    pass


class UnsupportedFileError(ValueError):
    pass


def _extract_pdf(path: Path) -> str:
    reader = PdfReader(str(path))
    pages = []
    for page in reader.pages:
        pages.append(page.extract_text() or "")
    return "\n".join(pages)


def _extract_docx(path: Path) -> str:
    doc = DocxDocument(str(path))
    return "\n".join(p.text for p in doc.paragraphs)


def _extract_ipynb(path: Path) -> str:
    notebook = json.loads(path.read_text(encoding="utf-8"))
    chunks = []
    for cell in notebook.get("cells", []):
        if cell.get("cell_type") not in ("markdown", "code"):
            continue
        source = cell.get("source", "")
        if isinstance(source, list):
            source = "".join(source)
        chunks.append(source)
    return "\n".join(chunks)


def _extract_xlsx(path: Path) -> str:
    workbook = load_workbook(str(path), read_only=True, data_only=True)
    sections = []
    try:
        for sheet in workbook.worksheets:
            if sheet.sheet_state != "visible":
                continue
            lines = [f"--- Sheet: {sheet.title} ---"]
            for row_number, row in enumerate(sheet.iter_rows(values_only=True), start=1):
                if row_number > MAX_SHEET_ROWS:
                    lines.append(f"[... truncated at {MAX_SHEET_ROWS} rows ...]")
                    break
                values = ["" if v is None else str(v) for v in row]
                if any(values):
                    lines.append("\t".join(values))
            sections.append("\n".join(lines))
    finally:
        workbook.close()
    return "\n\n".join(sections)


_EXTRACTORS = {
    ".pdf": _extract_pdf,
    ".docx": _extract_docx,
    ".ipynb": _extract_ipynb,
    ".xlsx": _extract_xlsx,
}


def looks_binary(data: bytes) -> bool:
    if data.startswith((b"\xff\xfe", b"\xfe\xff")):
        return False  # UTF-16 BOM
    return b"\x00" in data[:_BINARY_SAMPLE]


def decode_text(data: bytes, name: str = "") -> str:
    """Decode bytes with a detected encoding; reject binary content."""
    if not data:
        return ""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    best = from_bytes(data).best()
    if best is None:
        ext = Path(name).suffix or "(none)"
        raise UnsupportedFileError(f"Cannot read text for file type: {ext}")
    logger.debug("Decoded %s as %s", name, best.encoding)
    return str(best)


def extract_text(path: Path) -> str:
    """Read a file as text, enforcing the size limit before reading it."""
    size = path.stat().st_size
    if size > MAX_FILE_BYTES:
        raise FileTooLargeError(
            f"File is too large to read into context ({size} bytes, max: {MAX_FILE_BYTES})."
        )
    extractor = _EXTRACTORS.get(path.suffix.lower())
    if extractor is not None:
        return extractor(path)
    data = path.read_bytes()
    if looks_binary(data):
        raise UnsupportedFileError(f"Cannot read text for file type: {path.suffix or '(none)'}")
    return decode_text(data, path.name)
