"""Text clean-up helpers for scraped portal strings."""

from __future__ import annotations

from typing import Optional

import pangu


def clean_text(text: Optional[str]) -> str:
    """Turn portal markup into plain text.

    ``<br/>`` becomes a newline, the vertical-tab control character is kept as
    ``\\v`` and double spaces collapse once.
    """
    if not text:
        return ""
    return text.replace("<br/>", "\n").replace("\u000b", "\v").replace("  ", " ")


def spacing(text: str) -> str:
    """Insert spaces between CJK and latin runs."""
    if not text:
        return ""
    return pangu.spacing_text(text)


def tidy_paragraph(text: Optional[str]) -> str:
    """clean_text + spacing, without the leading space pangu leaves after newlines."""
    return spacing(clean_text(text)).replace("\n ", "\n")
