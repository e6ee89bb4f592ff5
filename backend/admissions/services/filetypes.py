"""
File type detection from magic bytes.

The client-supplied Content-Type is never trusted; the first bytes of the
file decide. Each document type accepts a fixed set of detected types.
"""

from __future__ import annotations

import mimetypes

from admissions.schemas.enums import DocumentType

# Checked against the first 12 bytes of the file content
_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":              "application/pdf",
    b"\xff\xd8\xff":      "image/jpeg",
    b"\x89PNG\r\n\x1a\n": "image/png",
    b"GIF87a":            "image/gif",
    b"GIF89a":            "image/gif",
}

_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})

ACCEPTED_CONTENT_TYPES: dict[DocumentType, frozenset[str]] = {
    DocumentType.TRANSCRIPT:  frozenset({"application/pdf"}),
    DocumentType.CERTIFICATE: _IMAGE_TYPES,
    DocumentType.IDENTITY:    _IMAGE_TYPES,
}


def sniff_content_type(data: bytes, filename: str | None = None) -> str:
    """MIME type from magic bytes, falling back to the extension, then octet-stream."""
    head = data[:12]
    for magic, mime in _MAGIC_BYTES.items():
        if head.startswith(magic):
            return mime
    # RIFF....WEBP
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        if guessed:
            return guessed
    return "application/octet-stream"


def is_accepted(document_type: DocumentType, content_type: str) -> bool:
    return content_type in ACCEPTED_CONTENT_TYPES[DocumentType(document_type)]
