"""Decode schedule PDFs into positioned text tokens with pdfplumber."""

from __future__ import annotations

import io
import logging

import pdfplumber

from shiftsync.schedule.models import ExtractionError, PositionedToken

logger = logging.getLogger(__name__)

_COORD_PRECISION = 2


def page_tokens(page: pdfplumber.page.Page) -> list[PositionedToken]:
    """Return the text runs of one page in content-stream order.

    ``keep_blank_chars`` keeps multi-word cells such as "Op naam" together;
    ``use_text_flow`` preserves the order in which the document draws them.
    """
    words = page.extract_words(keep_blank_chars=True, use_text_flow=True)
    tokens: list[PositionedToken] = []
    for word in words:
        text = word["text"].strip()
        if not text:
            continue
        tokens.append(
            PositionedToken(
                text=text,
                x=round(float(word["x0"]), _COORD_PRECISION),
                y=round(float(word["top"]), _COORD_PRECISION),
            )
        )
    return tokens


def decode_pdf(data: bytes) -> list[list[PositionedToken]]:
    """Decode PDF bytes into one token list per page.

    Raises ``ExtractionError`` if the bytes are not a readable PDF.
    """
    if not data:
        raise ExtractionError("attachment is empty")
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            pages = [page_tokens(page) for page in pdf.pages]
    except Exception as exc:
        raise ExtractionError(f"could not decode PDF: {exc}") from exc

    logger.debug("Decoded %d page(s), %d token(s)", len(pages), sum(len(p) for p in pages))
    return pages
