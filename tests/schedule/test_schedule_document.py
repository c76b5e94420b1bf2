"""Tests for PDF decoding into positioned tokens."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from shiftsync.schedule.document import decode_pdf, page_tokens
from shiftsync.schedule.models import ExtractionError, PositionedToken

pytestmark = pytest.mark.unit


def _page(words: list[dict]) -> MagicMock:
    page = MagicMock()
    page.extract_words.return_value = words
    return page


class TestPageTokens:
    def test_maps_words_to_tokens(self):
        page = _page(
            [
                {"text": "Op naam", "x0": 10.004, "top": 20.5},
                {"text": "09:00-17:00", "x0": 120.127, "top": 40.0},
            ]
        )
        assert page_tokens(page) == [
            PositionedToken("Op naam", 10.0, 20.5),
            PositionedToken("09:00-17:00", 120.13, 40.0),
        ]
        page.extract_words.assert_called_once_with(keep_blank_chars=True, use_text_flow=True)

    def test_skips_blank_runs_and_strips_text(self):
        page = _page([{"text": "   ", "x0": 1, "top": 1}, {"text": " Target ", "x0": 2, "top": 3}])
        assert page_tokens(page) == [PositionedToken("Target", 2.0, 3.0)]


class TestDecodePdf:
    def test_empty_bytes(self):
        with pytest.raises(ExtractionError, match="empty"):
            decode_pdf(b"")

    def test_unreadable_pdf(self):
        with pytest.raises(ExtractionError, match="could not decode PDF"):
            decode_pdf(b"definitely not a pdf")

    def test_one_token_list_per_page(self):
        pdf = MagicMock()
        pdf.pages = [
            _page([{"text": "Cover", "x0": 0, "top": 0}]),
            _page([{"text": "Op naam", "x0": 0, "top": 0}, {"text": "Target", "x0": 5, "top": 9}]),
        ]
        pdf.__enter__.return_value = pdf
        with patch("shiftsync.schedule.document.pdfplumber.open", return_value=pdf):
            pages = decode_pdf(b"%PDF-1.4")
        assert [[t.text for t in page] for page in pages] == [["Cover"], ["Op naam", "Target"]]
