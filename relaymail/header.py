# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""RFC 822/2047 header field construction.

``HeaderSet`` collects formatted header fields in insertion order and
serializes them as a CRLF-terminated block.  Values go through one of four
formatters:

- free text: ``encode_word`` (RFC 2047 Q-encoded UTF-8 when needed)
- address lists: parsed with RFC 822 rules, re-serialized with ``", "``
- dates: RFC 1123 with a numeric zone
- parameterized values: ``value; key="param"; ...``

Address input may use ``;`` as a separator; it is normalized to ``,`` before
parsing.  A ``;`` inside a quoted display name is normalized too.
"""

import re
from collections.abc import Iterable, Iterator, Mapping
from datetime import datetime
from email import charset as email_charset
from email.header import Header
from email.utils import format_datetime, formataddr, getaddresses

from relaymail.errors import AddressParseError


_UTF8_Q = email_charset.Charset("utf-8")
_UTF8_Q.header_encoding = email_charset.QP

# Printable ASCII plus tab passes through unencoded.
_NEEDS_ENCODING_RE = re.compile(r"[^\t\x20-\x7e]|=\?")
_EMPTY_SEGMENTS_RE = re.compile(r",(\s*,)+")


def encode_word(text: str) -> str:
    """Encode free text for a header field.

    Text made only of printable ASCII is returned unchanged.  Anything else
    becomes one or more ``=?utf-8?q?...?=`` encoded words, folded with
    CRLF + space when the encoded form is long.

    Args:
        text: Header value as the user wrote it.

    Returns:
        A value safe to place after ``Name: ``.
    """
    if not _NEEDS_ENCODING_RE.search(text):
        return text
    return Header(text, _UTF8_Q).encode(linesep="\r\n")


def normalize_address_list(text: str) -> str:
    """Turn a ``;``/``,`` delimited address list into a ``,`` list.

    Empty segments (``a@x.com;;b@x.com``, trailing separators) are dropped.
    """
    text = text.replace(";", ",")
    text = _EMPTY_SEGMENTS_RE.sub(",", text)
    return text.strip().strip(",").strip()


def parse_address_list(*values: str) -> list[tuple[str, str]]:
    """Parse one or more address lists into ``(name, address)`` pairs.

    Each value may itself hold several addresses.  Duplicates are kept.

    Args:
        *values: Address lists such as ``"Ann <a@x.com>; b@x.com"``.

    Returns:
        Parsed pairs in input order.

    Raises:
        AddressParseError: If any entry is not a valid mailbox.
    """
    pairs: list[tuple[str, str]] = []
    for value in values:
        normalized = normalize_address_list(value)
        if not normalized:
            continue
        for name, address in getaddresses([normalized]):
            if not address or "@" not in address:
                raise AddressParseError(f"mail: invalid address in {value!r}")
            local, _, domain = address.rpartition("@")
            if not local or not domain or any(c.isspace() for c in address):
                raise AddressParseError(f"mail: invalid address in {value!r}")
            pairs.append((name, address))
    return pairs


def parse_address(value: str) -> tuple[str, str]:
    """Parse exactly one mailbox.

    Raises:
        AddressParseError: If ``value`` is empty, invalid or holds a list.
    """
    pairs = parse_address_list(value)
    if len(pairs) != 1:
        raise AddressParseError(
            f"mail: expected a single address, got {value!r}"
        )
    return pairs[0]


def format_address_list(pairs: Iterable[tuple[str, str]]) -> str:
    """Serialize parsed addresses, joined by ``", "``."""
    return ", ".join(formataddr(pair, charset="utf-8") for pair in pairs)


def format_date(value: datetime) -> str:
    """Format a date as ``Mon, 02 Jan 2006 15:04:05 -0700``.

    Naive datetimes are interpreted as local time.
    """
    if value.tzinfo is None:
        value = value.astimezone()
    return format_datetime(value)


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def format_parameterized(value: str, params: Mapping[str, object]) -> str:
    """Format a value followed by ``; key=param`` pairs.

    ``str`` parameters are encoded and quoted, ``datetime`` parameters are
    quoted RFC 1123 dates, and anything else is rendered with ``str()``.

    Example:
        >>> format_parameterized("attachment", {"filename": "a.txt", "size": 3})
        'attachment; filename="a.txt"; size=3'
    """
    parts = [encode_word(value)]
    for key, param in params.items():
        if isinstance(param, str):
            rendered = _quote(encode_word(param))
        elif isinstance(param, datetime):
            rendered = _quote(format_date(param))
        else:
            rendered = str(param)
        parts.append(f"{key}={rendered}")
    return "; ".join(parts)


class HeaderSet:
    """Insertion-ordered header fields, one value per name.

    Names are matched case-insensitively; re-setting a field replaces its
    value in place and keeps the spelling and position of the first set.
    """

    def __init__(self) -> None:
        self._fields: dict[str, tuple[str, str]] = {}

    def set(self, name: str, value: str) -> None:
        """Set a free-text field (encoded with ``encode_word``)."""
        self._put(name, encode_word(value))

    def set_date(self, name: str, value: datetime) -> None:
        """Set a date field."""
        self._put(name, format_date(value))

    def set_address(self, name: str, *values: str) -> None:
        """Set an address-list field from one or more address lists.

        Raises:
            AddressParseError: If any address is invalid.
        """
        self._put(name, format_address_list(parse_address_list(*values)))

    def set_value(
        self, name: str, value: str, params: Mapping[str, object] | None = None
    ) -> None:
        """Set a parameterized field such as ``Content-Type``."""
        self._put(name, format_parameterized(value, params or {}))

    def get(self, name: str, default: str | None = None) -> str | None:
        entry = self._fields.get(name.lower())
        return entry[1] if entry else default

    def items(self) -> Iterator[tuple[str, str]]:
        return iter(self._fields.values())

    def to_bytes(self) -> bytes:
        """Serialize as ``Name: value\\r\\n`` lines in insertion order."""
        return "".join(
            f"{name}: {value}\r\n" for name, value in self._fields.values()
        ).encode("utf-8")

    def _put(self, name: str, value: str) -> None:
        key = name.lower()
        existing = self._fields.get(key)
        self._fields[key] = (existing[0] if existing else name, value)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._fields

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"HeaderSet({list(self._fields.values())!r})"
