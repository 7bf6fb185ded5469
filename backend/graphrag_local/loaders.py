from __future__ import annotations

import io
from pathlib import Path
from typing import Iterable, Protocol

from .errors import ValidationError


class Loader(Protocol):
    def can_load(self, filename: str) -> bool: ...

    def load_text(self, data: bytes) -> str: ...


def _suffix(filename: str) -> str:
    return Path(filename).suffix.lower()


class TextLoader:
    def can_load(self, filename: str) -> bool:
        return _suffix(filename) in {".txt", ".md", ".markdown"}

    def load_text(self, data: bytes) -> str:
        return data.decode("utf-8", errors="ignore").strip()


class DocxLoader:
    def can_load(self, filename: str) -> bool:
        return _suffix(filename) == ".docx"

    def load_text(self, data: bytes) -> str:
        from docx import Document

        doc = Document(io.BytesIO(data))
        parts: list[str] = []
        for para in doc.paragraphs:
            t = (para.text or "").strip()
            if t:
                parts.append(t)
        return "\n".join(parts).strip()


class PdfLoader:
    def can_load(self, filename: str) -> bool:
        return _suffix(filename) == ".pdf"

    def load_text(self, data: bytes) -> str:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        parts: list[str] = []
        for page in reader.pages:
            t = (page.extract_text() or "").strip()
            if t:
                parts.append(t)
        return "\n".join(parts).strip()


class XlsxLoader:
    def can_load(self, filename: str) -> bool:
        return _suffix(filename) in {".xlsx", ".xlsm"}

    def load_text(self, data: bytes) -> str:
        from openpyxl import load_workbook

        wb = load_workbook(filename=io.BytesIO(data), read_only=True, data_only=True)
        parts: list[str] = []
        for sheet_name in wb.sheetnames:
            ws = wb[sheet_name]
            parts.append(f"# Sheet: {sheet_name}")
            for row in ws.iter_rows(values_only=True):
                cells = ["" if v is None else str(v) for v in row]
                line = "\t".join(cells).strip()
                if line:
                    parts.append(line)
        return "\n".join(parts).strip()


def default_loaders() -> list[Loader]:
    return [TextLoader(), DocxLoader(), PdfLoader(), XlsxLoader()]


def load_document_text(filename: str, data: bytes, loaders: Iterable[Loader] | None = None) -> str:
    """Extract plain text from an uploaded file, picking the loader by suffix."""

    for loader in loaders or default_loaders():
        if loader.can_load(filename):
            text = loader.load_text(data)
            if not text:
                raise ValidationError(f"No text could be extracted from {filename!r}")
            return text
    raise ValidationError(f"Unsupported file type: {_suffix(filename) or filename!r}")


def document_title(filename: str) -> str:
    return Path(filename).stem.strip() or filename
