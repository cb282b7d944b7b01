# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Content-type detection from leading payload bytes.

Implements the WHATWG MIME Sniffing rules (https://mimesniff.spec.whatwg.org/)
over at most the first 512 bytes.  The filename is never consulted: a
``report.pdf`` that is really a PNG is sent as ``image/png``.
"""

import struct
from collections.abc import Callable
from dataclasses import dataclass


#: Only this many leading bytes are inspected.
SNIFF_LEN = 512

TEXT_PLAIN = "text/plain; charset=utf-8"
OCTET_STREAM = "application/octet-stream"

_WHITESPACE = b"\t\n\x0c\r "
_TAG_TERMINATORS = b" >"

# Bytes that never appear in text (WHATWG "binary data byte").
_BINARY_BYTES = frozenset(
    [*range(0x00, 0x09), 0x0B, *range(0x0E, 0x1B), *range(0x1C, 0x20)]
)


def _skip_whitespace(data: bytes) -> bytes:
    return data.lstrip(_WHITESPACE)


@dataclass(frozen=True)
class _Exact:
    prefix: bytes
    content_type: str

    def match(self, data: bytes) -> str | None:
        return self.content_type if data.startswith(self.prefix) else None


@dataclass(frozen=True)
class _Masked:
    mask: bytes
    pattern: bytes
    content_type: str
    skip_whitespace: bool = False

    def match(self, data: bytes) -> str | None:
        if self.skip_whitespace:
            data = _skip_whitespace(data)
        if len(data) < len(self.pattern):
            return None
        for value, mask, expected in zip(data, self.mask, self.pattern):
            if value & mask != expected:
                return None
        return self.content_type


@dataclass(frozen=True)
class _HTMLTag:
    """Case-insensitive HTML tag prefix followed by a space or ``>``."""

    tag: bytes

    def match(self, data: bytes) -> str | None:
        data = _skip_whitespace(data)
        if len(data) < len(self.tag) + 1:
            return None
        if data[: len(self.tag)].upper() != self.tag:
            return None
        if data[len(self.tag)] not in _TAG_TERMINATORS:
            return None
        return "text/html; charset=utf-8"


def _match_mp4(data: bytes) -> str | None:
    if len(data) < 12:
        return None
    (box_size,) = struct.unpack(">I", data[:4])
    if len(data) < box_size or box_size % 4 != 0:
        return None
    if data[4:8] != b"ftyp":
        return None
    for start in range(8, box_size, 4):
        if start == 12:
            # Bytes 12-15 hold the minor version, not a brand.
            continue
        if data[start : start + 3] == b"mp4":
            return "video/mp4"
    return None


_FF4 = b"\xff\xff\xff\xff"

_SIGNATURES: tuple[Callable[[bytes], str | None], ...] = (
    *(
        _HTMLTag(tag).match
        for tag in (
            b"<!DOCTYPE HTML",
            b"<HTML",
            b"<HEAD",
            b"<SCRIPT",
            b"<IFRAME",
            b"<H1",
            b"<DIV",
            b"<FONT",
            b"<TABLE",
            b"<A",
            b"<STYLE",
            b"<TITLE",
            b"<B",
            b"<BODY",
            b"<BR",
            b"<P",
            b"<!--",
        )
    ),
    _Masked(
        b"\xff" * 5, b"<?xml", "text/xml; charset=utf-8", skip_whitespace=True
    ).match,
    _Exact(b"%PDF-", "application/pdf").match,
    _Exact(b"%!PS-Adobe-", "application/postscript").match,
    # Byte order marks
    _Masked(
        b"\xff\xff\x00\x00", b"\xfe\xff\x00\x00", "text/plain; charset=utf-16be"
    ).match,
    _Masked(
        b"\xff\xff\x00\x00", b"\xff\xfe\x00\x00", "text/plain; charset=utf-16le"
    ).match,
    _Masked(b"\xff\xff\xff\x00", b"\xef\xbb\xbf\x00", TEXT_PLAIN).match,
    # Images
    _Exact(b"\x00\x00\x01\x00", "image/x-icon").match,
    _Exact(b"\x00\x00\x02\x00", "image/x-icon").match,
    _Exact(b"BM", "image/bmp").match,
    _Exact(b"GIF87a", "image/gif").match,
    _Exact(b"GIF89a", "image/gif").match,
    _Masked(
        _FF4 + b"\x00\x00\x00\x00" + b"\xff" * 6,
        b"RIFF\x00\x00\x00\x00WEBPVP",
        "image/webp",
    ).match,
    _Exact(b"\x89PNG\r\n\x1a\n", "image/png").match,
    _Exact(b"\xff\xd8\xff", "image/jpeg").match,
    # Audio and video
    _Masked(
        _FF4 + b"\x00\x00\x00\x00" + _FF4,
        b"FORM\x00\x00\x00\x00AIFF",
        "audio/aiff",
    ).match,
    _Exact(b"ID3", "audio/mpeg").match,
    _Exact(b"OggS\x00", "application/ogg").match,
    _Exact(b"MThd\x00\x00\x00\x06", "audio/midi").match,
    _Masked(
        _FF4 + b"\x00\x00\x00\x00" + _FF4,
        b"RIFF\x00\x00\x00\x00AVI ",
        "video/avi",
    ).match,
    _Masked(
        _FF4 + b"\x00\x00\x00\x00" + _FF4,
        b"RIFF\x00\x00\x00\x00WAVE",
        "audio/wave",
    ).match,
    _match_mp4,
    _Exact(b"\x1a\x45\xdf\xa3", "video/webm").match,
    # Fonts
    _Exact(b"\x00\x01\x00\x00", "font/ttf").match,
    _Exact(b"OTTO", "font/otf").match,
    _Exact(b"ttcf", "font/collection").match,
    _Exact(b"wOFF", "font/woff").match,
    _Exact(b"wOF2", "font/woff2").match,
    # Archives
    _Exact(b"\x1f\x8b\x08", "application/x-gzip").match,
    _Exact(b"PK\x03\x04", "application/zip").match,
    _Exact(b"Rar!\x1a\x07\x00", "application/x-rar-compressed").match,
    _Exact(b"Rar!\x1a\x07\x01\x00", "application/x-rar-compressed").match,
    _Exact(b"\x00asm", "application/wasm").match,
)


def detect_content_type(data: bytes) -> str:
    """Return the media type of ``data``.

    Always returns a valid MIME type; when nothing more specific matches the
    result is ``text/plain; charset=utf-8`` for text-like data and
    ``application/octet-stream`` otherwise.

    Args:
        data: Payload bytes (only the first ``SNIFF_LEN`` are inspected).

    Returns:
        Media type, possibly with a ``charset`` parameter.
    """
    head = data[:SNIFF_LEN]
    for signature in _SIGNATURES:
        content_type = signature(head)
        if content_type is not None:
            return content_type
    if any(byte in _BINARY_BYTES for byte in head):
        return OCTET_STREAM
    return TEXT_PLAIN
