import io
import re
import logging
import mimetypes
from typing import Optional

from pypdf import PdfReader

from errors import ExtractionFailure

logger = logging.getLogger("docchat.extraction")

PDF = "application/pdf"
PLAIN_TEXT = "text/plain"
SUPPORTED_MEDIA_TYPES = {PDF, PLAIN_TEXT}
GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


def clean_text(s: str) -> str:
    s = s.replace("\x00", " ")
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    return s.strip()


def base_media_type(media_type: Optional[str]) -> str:
    # "text/plain; charset=utf-8" -> "text/plain"
    return (media_type or "").split(";", 1)[0].strip().lower()


def resolve_media_type(declared: Optional[str], filename: Optional[str]) -> str:
    """Return the declared media type, or a guess from the file extension
    when the client sent nothing useful."""
    media_type = base_media_type(declared)
    if media_type not in GENERIC_MEDIA_TYPES:
        return media_type
    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        if guessed:
            return base_media_type(guessed)
    return media_type or "application/octet-stream"


def _extract_pdf(data: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted and not reader.decrypt(""):
            raise ExtractionFailure("The PDF is password protected and cannot be read.")
        pages = list(reader.pages)
    except ExtractionFailure:
        raise
    except Exception as exc:
        raise ExtractionFailure("The PDF could not be parsed; it may be corrupted.", details=str(exc)) from exc

    parts = []
    for number, page in enumerate(pages, start=1):
        try:
            parts.append(page.extract_text() or "")
        except Exception as exc:
            logger.warning("Failed to extract text from PDF page %d: %s", number, exc)
            parts.append("")
    return clean_text("\n\n".join(parts))


def _extract_plain_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Plain text upload is not valid UTF-8; dropping undecodable bytes")
        return data.decode("utf-8", errors="ignore")


def extract_text(data: bytes, media_type: Optional[str]) -> str:
    """Best-effort plain text for ``data``.

    Unsupported media types yield ``""``: "nothing extractable" is a valid
    outcome, not an error. A PDF that cannot be parsed raises
    ``ExtractionFailure``. Never retries.
    """
    kind = base_media_type(media_type)
    if kind == PDF:
        text = _extract_pdf(data)
    elif kind == PLAIN_TEXT:
        text = _extract_plain_text(data)
    else:
        logger.info("No extractor for media type %r", kind)
        return ""
    logger.info("Extracted %d characters from %s", len(text), kind)
    return text
