"""Reads the contact card that the vcf command sends."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DISPLAY_NAME = "Contact"
EXAMPLE_VCARD = "BEGIN:VCARD\nVERSION:3.0\nFN:Contact Name\nTEL:+628123456789\nEND:VCARD"

_FN_RE = re.compile(r"^FN[^:\r\n]*:([^\r\n]+)", re.IGNORECASE | re.MULTILINE)


class VCardError(Exception):
    """The vCard file is missing or not a vCard."""


@dataclass(frozen=True)
class VCard:
    content: str
    display_name: str


def load_vcard(path: Path) -> VCard:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise VCardError(f"{path} not found") from None
    except (OSError, UnicodeDecodeError) as exc:
        raise VCardError(f"cannot read {path}: {exc}") from exc

    if "BEGIN:VCARD" not in content or "END:VCARD" not in content:
        raise VCardError(f"{path} is not a valid vCard")

    display_name = DEFAULT_DISPLAY_NAME
    match = _FN_RE.search(content)
    if match:
        display_name = match.group(1).replace(";", " ").strip() or DEFAULT_DISPLAY_NAME
    return VCard(content=content, display_name=display_name)
