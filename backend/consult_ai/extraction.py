from __future__ import annotations

from pathlib import Path
from typing import Protocol

from consult_core.log import logger

_log = logger(tag="extraction")

NO_TEXT_DETECTED = "[Image - no text detected]"
UNSUPPORTED_FORMAT = "[Unsupported format]"
EXTRACTION_FAILED = "[Extraction failed]"
SENTINELS = {NO_TEXT_DETECTED, UNSUPPORTED_FORMAT, EXTRACTION_FAILED}

_TEXT_EXTENSIONS = {".txt", ".csv", ".json", ".md"}
_DOCX_EXTENSIONS = {".docx"}
_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".tif", ".tiff"}
_MIN_OCR_CHARS = 10


class ContentExtractor(Protocol):
    def extract(self, path: str, mime_type: str) -> str: ...


def is_sentinel(content: str) -> bool:
    return content.strip() in SENTINELS or "no text detected" in content.lower()


def _extract_pdf(path: Path) -> str:
    from pypdf import PdfReader

    reader = PdfReader(str(path))
    return "\n".join((page.extract_text() or "") for page in reader.pages).strip()


def _extract_docx(path: Path) -> str:
    from docx import Document

    document = Document(str(path))
    return "\n".join(paragraph.text for paragraph in document.paragraphs).strip()


def _extract_image(path: Path) -> str:
    import pytesseract
    from PIL import Image, ImageFilter, ImageOps

    with Image.open(path) as image:
        prepared = ImageOps.autocontrast(ImageOps.grayscale(image)).filter(ImageFilter.SHARPEN)
        try:
            text = pytesseract.image_to_string(prepared, lang="eng")
        except pytesseract.TesseractNotFoundError:
            _log.warning("tesseract binary not installed; OCR skipped for %s", path.name)
            return NO_TEXT_DETECTED
    text = text.strip()
    return text if len(text) > _MIN_OCR_CHARS else NO_TEXT_DETECTED


class LocalContentExtractor:
    """Reads text out of stored uploads without modifying them."""

    def extract(self, path: str, mime_type: str) -> str:
        file_path = Path(path)
        mime = (mime_type or "").lower().strip()
        ext = file_path.suffix.lower()
        try:
            if mime == "application/pdf" or ext == ".pdf":
                return _extract_pdf(file_path)
            if "word" in mime or "officedocument" in mime or ext in _DOCX_EXTENSIONS:
                return _extract_docx(file_path)
            if mime.startswith("text/") or ext in _TEXT_EXTENSIONS:
                return file_path.read_text(encoding="utf-8", errors="ignore")
            if mime.startswith("image/") or ext in _IMAGE_EXTENSIONS:
                return _extract_image(file_path)
        except Exception as exc:
            _log.error("Extraction error for %s (%s): %s", file_path.name, mime or ext, exc)
            return EXTRACTION_FAILED
        return UNSUPPORTED_FORMAT
