from __future__ import annotations

from consult_ai.extraction import (
    EXTRACTION_FAILED,
    NO_TEXT_DETECTED,
    UNSUPPORTED_FORMAT,
    LocalContentExtractor,
    is_sentinel,
)


def test_plain_text_is_decoded_and_file_left_untouched(tmp_path):
    path = tmp_path / "note.txt"
    path.write_bytes("Glucose 182 mg/dL – fasting".encode("utf-8"))
    before = path.read_bytes()

    content = LocalContentExtractor().extract(str(path), "text/plain")

    assert content == "Glucose 182 mg/dL – fasting"
    assert path.read_bytes() == before


def test_docx_paragraphs_are_joined(tmp_path):
    from docx import Document

    path = tmp_path / "discharge.docx"
    document = Document()
    document.add_paragraph("Discharge summary")
    document.add_paragraph("BP 128/82, HR 76")
    document.save(str(path))

    content = LocalContentExtractor().extract(
        str(path),
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    )
    assert content == "Discharge summary\nBP 128/82, HR 76"


def test_unknown_format_and_broken_image_map_to_sentinels(tmp_path):
    archive = tmp_path / "scan.zip"
    archive.write_bytes(b"PK\x03\x04")
    broken = tmp_path / "xray.png"
    broken.write_bytes(b"definitely not a png")

    extractor = LocalContentExtractor()
    assert extractor.extract(str(archive), "application/zip") == UNSUPPORTED_FORMAT
    assert extractor.extract(str(broken), "image/png") == EXTRACTION_FAILED


def test_sentinel_detection():
    assert is_sentinel(NO_TEXT_DETECTED)
    assert is_sentinel("  [Unsupported format] ")
    assert not is_sentinel("Hemoglobin 13.5 g/dL")
