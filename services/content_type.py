"""
Content type classification for uploads.

Sniffs the leading bytes of an upload to a single normalized media type.
Binary signatures come from the ``filetype`` library; text structure (SVG,
plain text) is inspected directly. When sniffing is inconclusive the
extension table decides, and anything still unknown degrades to the generic
binary type rather than failing.
"""

import os
from typing import Dict, Optional

import filetype

from utils.logger import get_logger

logger = get_logger(__name__)


class ContentTypeClassifier:
    """Pure, deterministic best-guess media type for a byte buffer."""

    GENERIC_BINARY = "application/octet-stream"
    PLAIN_TEXT = "text/plain"
    SVG = "image/svg+xml"

    SNIFF_SIZE = 8192  # leading bytes inspected

    EXTENSION_TO_MIME: Dict[str, str] = {
        ".txt": "text/plain",
        ".md": "text/markdown",
        ".markdown": "text/markdown",
        ".csv": "text/csv",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
        ".gif": "image/gif",
        ".svg": "image/svg+xml",
    }

    # Text subtypes that refine a plain-text sniff when the extension says so
    TEXT_REFINEMENTS = {"text/markdown", "text/csv"}

    # filetype matches these on two or three printable bytes ("BM", "MZ",
    # "FWS", "ID3", "BZh", "%!"), so clean text wins over them
    SHORT_SIGNATURES = frozenset({
        "image/bmp",
        "application/x-msdownload",
        "application/x-shockwave-flash",
        "audio/mpeg",
        "application/x-bzip2",
        "application/postscript",
    })

    def classify(self, buffer: bytes, filename: Optional[str] = None) -> str:
        """
        Classify ``buffer`` (ideally the first several KB of the file).

        Args:
            buffer: Leading bytes of the upload
            filename: Declared filename, used only for the extension fallback

        Returns:
            Normalized media type, never empty
        """
        if not isinstance(buffer, (bytes, bytearray, memoryview)):
            raise TypeError(
                f"Unsupported input type for classification: {type(buffer).__name__}"
            )

        sample = bytes(buffer[: self.SNIFF_SIZE])
        sniffed = self._normalize_mime(self._sniff(sample))
        by_extension = self._mime_from_extension(filename)

        if sniffed == self.PLAIN_TEXT and by_extension in self.TEXT_REFINEMENTS:
            return by_extension

        if not sniffed or sniffed == self.GENERIC_BINARY:
            if by_extension:
                logger.debug(
                    f"Sniffing inconclusive for {filename!r}, using extension type {by_extension}"
                )
                return by_extension
            return self.GENERIC_BINARY

        return sniffed

    def describe(self, content_type: str) -> Dict[str, bool]:
        """Category flags shown alongside an accepted upload."""
        content_type = self._normalize_mime(content_type)
        return {
            "is_image": content_type.startswith("image/"),
            "is_text": content_type.startswith("text/") or "csv" in content_type,
        }

    def _sniff(self, sample: bytes) -> str:
        if not sample:
            return ""

        kind = filetype.guess(sample)
        if kind is not None and kind.mime not in self.SHORT_SIGNATURES:
            return kind.mime

        text_format = self._detect_text_format(sample)
        if text_format:
            return text_format

        return kind.mime if kind is not None else self.GENERIC_BINARY

    def _detect_text_format(self, sample: bytes) -> Optional[str]:
        """Detect SVG and plain text; None when the sample is not text"""
        if b"\x00" in sample:
            return None

        try:
            text = sample.decode("utf-8")
        except UnicodeDecodeError as e:
            # A multi-byte sequence cut off by the sample boundary is still text
            if e.reason != "unexpected end of data":
                return None
            text = sample[: e.start].decode("utf-8")

        lowered = text.lstrip("\ufeff").lstrip().lower()
        if lowered.startswith("<svg"):
            return self.SVG
        if lowered.startswith("<?xml") or lowered.startswith("<!--") or lowered.startswith("<!doctype svg"):
            if "<svg" in lowered:
                return self.SVG

        return self.PLAIN_TEXT

    def _mime_from_extension(self, filename: Optional[str]) -> Optional[str]:
        if not filename:
            return None
        _, ext = os.path.splitext(filename)
        return self.EXTENSION_TO_MIME.get(ext.lower())

    def _normalize_mime(self, mime: str) -> str:
        """Normalize MIME type by removing parameters and trimming"""
        if not mime:
            return ""
        return mime.split(";")[0].strip().lower()
