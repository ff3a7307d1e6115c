"""Tests for media-type based text extraction."""

import json

import pytest

from core.domain import ErrorCode
from core.exceptions import UnsupportedMediaType
from infrastructure.document_processors import (
    TextExtractor, can_process_media_type, should_auto_process
)


@pytest.fixture
def extractor():
    return TextExtractor()


class TestTextExtraction:

    def test_plain_text_decoded(self, extractor):
        assert extractor.extract("Valve torque: 40 Nm".encode(), "text/plain") == "Valve torque: 40 Nm"

    def test_media_type_parameters_ignored(self, extractor):
        assert extractor.extract(b"abc", "text/plain; charset=utf-8") == "abc"

    def test_csv_decoded_verbatim(self, extractor):
        content = b"part,qty\nfilter,2\n"
        assert extractor.extract(content, "text/csv") == "part,qty\nfilter,2\n"

    def test_html_tags_stripped_and_whitespace_collapsed(self, extractor):
        html = b"<html><body><h1>Pump</h1>\n\n<p>Check   the  seal.</p></body></html>"
        assert extractor.extract(html, "text/html") == "Pump Check the seal."

    def test_html_scripts_styles_dropped_and_entities_decoded(self, extractor):
        html = (b"<style>p{color:red}</style><script>var secret=1;</script>"
                b"<p>Torque &amp; pressure &lt;10 bar</p>")

        assert extractor.extract(html, "text/html") == "Torque & pressure <10 bar"

    def test_json_pretty_printed(self, extractor):
        raw = b'{"unit":"A1","steps":[1,2]}'
        text = extractor.extract(raw, "application/json")

        assert text == json.dumps({"unit": "A1", "steps": [1, 2]}, indent=2)

    def test_invalid_json_returned_raw(self, extractor):
        assert extractor.extract(b"{not json", "application/json") == "{not json"

    @pytest.mark.parametrize("media_type,label", [
        ("application/pdf", "PDF file"),
        ("application/msword", "Word document"),
        ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "Excel file"),
    ])
    def test_office_types_get_labelled_placeholder(self, extractor, media_type, label):
        text = extractor.extract(b"%binary%", media_type, filename="pump-manual.bin")

        assert text.startswith(f"{label}: pump-manual.bin")
        assert "requires additional processing" in text

    def test_unknown_type_raises(self, extractor):
        with pytest.raises(UnsupportedMediaType) as exc_info:
            extractor.extract(b"\x89PNG", "image/png")

        assert exc_info.value.error_code == ErrorCode.UNSUPPORTED_MEDIA_TYPE
        assert exc_info.value.retryable is False


class TestMediaTypeChecks:

    @pytest.mark.parametrize("media_type", ["text/plain", "text/markdown", "application/json", "application/pdf"])
    def test_processable(self, media_type):
        assert can_process_media_type(media_type)

    @pytest.mark.parametrize("media_type", ["image/png", "application/zip", "", None])
    def test_not_processable(self, media_type):
        assert not can_process_media_type(media_type)

    def test_only_text_like_types_auto_process(self):
        assert should_auto_process("text/plain")
        assert should_auto_process("application/json")
        assert not should_auto_process("application/pdf")
