import json

import pytest

from doc_assistant.modules.doc_processor import DocumentProcessor
from doc_assistant.utils import DocumentParseError


@pytest.fixture()
def dp():
    return DocumentProcessor(chunk_size=200, chunk_overlap=20)


def test_extract_plain_text(dp):
    assert dp.extract_text("notes.txt", "héllo world".encode("utf-8"), "text/plain") == "héllo world"


def test_extract_json_object_is_pretty_printed(dp):
    data = json.dumps({"title": "Guide", "steps": [1, 2]}).encode("utf-8")
    text = dp.extract_text("data.json", data)
    assert json.loads(text) == {"title": "Guide", "steps": [1, 2]}
    assert "\n" in text


def test_extract_json_string_is_returned_verbatim(dp):
    assert dp.extract_text("s.json", b'"just a string"') == "just a string"


def test_extract_invalid_json_raises(dp):
    with pytest.raises(DocumentParseError):
        dp.extract_text("bad.json", b"{oops")


def test_extract_non_utf8_raises(dp):
    with pytest.raises(DocumentParseError):
        dp.extract_text("binary.txt", b"\xff\xfe\x00\x81")


def test_extract_damaged_pdf_raises_parse_error(dp, monkeypatch):
    import PyPDF2

    def broken_reader(stream):
        raise KeyError("/Root")

    monkeypatch.setattr(PyPDF2, "PdfReader", broken_reader)
    with pytest.raises(DocumentParseError) as exc:
        dp.extract_text("report.pdf", b"%PDF-1.4 truncated")
    assert exc.value.status_code == 400


def test_extract_garbage_pdf_raises_parse_error(dp):
    with pytest.raises(DocumentParseError):
        dp.extract_text("report.pdf", b"definitely not a pdf")


def test_clean_text_collapses_whitespace_and_keeps_paragraphs(dp):
    raw = "First   line\r\n\r\n\r\n\r\nSecond\tline  \x00"
    assert dp.clean_text(raw) == "First line\n\nSecond line"


def test_chunk_text_empty(dp):
    assert dp.chunk_text("") == []
    assert dp.chunk_text("   ") == []


def test_chunk_text_short_text_is_single_chunk(dp):
    chunks = dp.chunk_text("One sentence. Two sentences.")
    assert len(chunks) == 1
    assert chunks[0]["text"] == "One sentence. Two sentences."
    assert chunks[0]["metadata"]["chunk_index"] == 0
    assert chunks[0]["metadata"]["section"] == "Section 1"
    assert chunks[0]["metadata"]["token_count"] > 0


def test_chunk_text_long_text_splits_with_budget(dp):
    text = " ".join(f"Sentence number {i} talks about topic {i}." for i in range(300))
    chunks = dp.chunk_text(text)

    assert len(chunks) > 1
    assert [c["metadata"]["chunk_index"] for c in chunks] == list(range(len(chunks)))
    assert all(c["text"].strip() for c in chunks)
    assert "Sentence number 299" in chunks[-1]["text"]


def test_chunk_overlap_capped_to_quarter_of_size():
    dp = DocumentProcessor(chunk_size=400, chunk_overlap=300)
    assert dp.chunk_overlap == 100


def test_invalid_chunk_size_falls_back_to_default():
    assert DocumentProcessor(chunk_size=10).chunk_size == 800


def test_process_upload(dp):
    result = dp.process_upload("notes.txt", b"Python is great. Flask is small.")
    assert result["total_chunks"] == 1
    assert result["chunks"][0]["text"] == "Python is great. Flask is small."
    assert result["total_tokens"] > 0


def test_process_upload_rejects_empty_text(dp):
    with pytest.raises(DocumentParseError):
        dp.process_upload("empty.txt", b" \n\n ")
