"""
Text Extraction — bytes → document text

Format-specific parsing (PDF, DOCX) is not done here; uploads are decoded
as UTF-8 text. Undecodable bytes become U+FFFD so a stray legacy-encoded
character does not fail the whole document. A leading byte-order mark is
dropped and embedded NUL bytes are stripped (PostgreSQL TEXT columns
reject them).
"""

from __future__ import annotations

import logging

from ragingest.core.exceptions import DecodeError

logger = logging.getLogger(__name__)

REPLACEMENT_CHAR = "\ufffd"


def decode_document(data: bytes, *, document_id: str | None = None) -> str:
    """
    Decode raw file bytes to text, replacing invalid UTF-8 sequences.

    Raises:
        DecodeError: the file has content but none of it decodes to text
                     (a binary upload).
    """
    text = data.decode("utf-8-sig", errors="replace")

    if "\x00" in text:
        nul_count = text.count("\x00")
        text = text.replace("\x00", "")
        logger.debug("Stripped NUL bytes | doc=%s count=%d", document_id, nul_count)

    replaced = text.count(REPLACEMENT_CHAR)
    if replaced:
        visible = "".join(text.split())
        if visible and not visible.strip(REPLACEMENT_CHAR):
            raise DecodeError(
                "Text extraction error: file contains no valid UTF-8 text",
                document_id,
            )
        logger.warning(
            "Replaced invalid UTF-8 sequences | doc=%s count=%d", document_id, replaced,
        )

    return text
