"""Name encoding for LVM objects and published object paths.

LVM accepts only ``[A-Za-z0-9+_.-]`` in volume names and reserves a few
prefixes and substrings for internal volumes. Arbitrary user supplied names
are made safe by escaping every other byte of their UTF-8 form as ``+hh``;
``+`` itself is therefore always escaped so decoding is unambiguous.
"""

from __future__ import annotations

import re
import string

_PLAIN_CHARS = frozenset(string.ascii_letters + string.digits + "_.-")
_ESCAPE_RE = re.compile(r"\+([0-9a-fA-F]{2})")

RESERVED_LV_PREFIXES = ("pvmove", "snapshot")
RESERVED_LV_SUBSTRINGS = ("_mlog", "_mimage", "_rimage", "_rmeta", "_tdata", "_tmeta")


def _escape_byte(value: int) -> str:
    return "+%02x" % value


def encode_lvm_name(name: str, for_lv: bool = False) -> str:
    """Return an LVM-safe spelling of ``name``."""
    raw = name.encode("utf-8")
    parts = []
    for index, value in enumerate(raw):
        char = chr(value)
        if value < 0x80 and char in _PLAIN_CHARS and not (index == 0 and char == "-"):
            parts.append(char)
        else:
            parts.append(_escape_byte(value))
    encoded = "".join(parts)

    if encoded in {"", ".", ".."}:
        return "".join(_escape_byte(value) for value in raw)

    if for_lv:
        # Reserved prefixes are plain ASCII, so the first byte is one char.
        if encoded.startswith(RESERVED_LV_PREFIXES):
            encoded = _escape_byte(raw[0]) + encoded[1:]
        for marker in RESERVED_LV_SUBSTRINGS:
            encoded = encoded.replace(marker, _escape_byte(ord("_")) + marker[1:])
    return encoded


def decode_lvm_name(encoded: str) -> str:
    """Reverse :func:`encode_lvm_name`; unescaped names pass through."""
    data = bytearray()
    position = 0
    for match in _ESCAPE_RE.finditer(encoded):
        data.extend(encoded[position:match.start()].encode("utf-8"))
        data.append(int(match.group(1), 16))
        position = match.end()
    data.extend(encoded[position:].encode("utf-8"))
    return data.decode("utf-8", errors="replace")


def escape_path_element(element: str) -> str:
    """Escape a name for use as one object path element."""
    out = []
    for value in element.encode("utf-8"):
        char = chr(value)
        if value < 0x80 and char.isalnum():
            out.append(char)
        else:
            out.append("_%02x" % value)
    return "".join(out)


def build_object_path(base: str, *elements: str) -> str:
    """Join ``base`` with escaped path elements."""
    path = base.rstrip("/")
    for element in elements:
        path = f"{path}/{escape_path_element(element)}"
    return path
