"""YAML frontmatter and markdown section helpers for vault files.

A vault note is optional YAML frontmatter between two `---` fences followed by
a markdown body:

    ---
    type: decision
    status: active
    tags: [infra, db]
    ---

    # Title
    ...

Parsing is lenient: unknown types become `reference`, dates keep their first
ten characters, and a file without frontmatter is a reference note whose
summary is its first non-empty line. Only an unclosed fence is an error.
"""

from __future__ import annotations

import datetime as _dt
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from wardwell.errors import ValidationError

NOTE_TYPES = ("project", "decision", "insight", "thread", "domain", "reference")

_FENCE = "---"
_CLOSE_RE = re.compile(r"^---[ \t]*$", re.MULTILINE)
_H1_RE = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)


@dataclass
class Note:
    """A parsed vault file."""

    meta: dict[str, Any] = field(default_factory=dict)
    body: str = ""
    has_frontmatter: bool = False

    @property
    def type(self) -> str:
        return normalize_type(self.meta.get("type"))

    @property
    def status(self) -> str | None:
        value = self.meta.get("status")
        return str(value).strip().lower() if value else None

    @property
    def summary(self) -> str:
        value = self.meta.get("summary")
        if value:
            return str(value).strip()
        return first_line_summary(self.body)

    @property
    def tags(self) -> list[str]:
        return as_str_list(self.meta.get("tags"))

    def title(self, fallback: str = "") -> str:
        value = self.meta.get("title")
        if value:
            return str(value).strip()
        m = _H1_RE.search(self.body)
        return m.group(1) if m else fallback


def split(text: str) -> tuple[dict[str, Any], str, bool]:
    """Split text into (meta, body, has_frontmatter). Raises ValidationError on a bad block."""
    text = text.removeprefix("﻿")
    first_nl = text.find("\n")
    if first_nl == -1 or text[:first_nl].rstrip() != _FENCE:
        return {}, text, False

    rest = text[first_nl + 1:]
    m = _CLOSE_RE.search(rest)
    if m is None:
        msg = "unclosed frontmatter block"
        raise ValidationError(msg)

    raw = rest[:m.start()]
    body = rest[m.end():].lstrip("\n")
    try:
        meta = yaml.safe_load(raw) if raw.strip() else {}
    except yaml.YAMLError as exc:
        msg = f"invalid frontmatter: {exc}"
        raise ValidationError(msg) from exc
    if meta is None:
        meta = {}
    if not isinstance(meta, dict):
        msg = "frontmatter must be a mapping"
        raise ValidationError(msg)
    return meta, body, True


def parse(text: str) -> Note:
    meta, body, has_fm = split(text)
    return Note(meta=meta, body=body, has_frontmatter=has_fm)


def render(meta: dict[str, Any], body: str) -> str:
    """Serialize meta + body back into a frontmatter document."""
    dumped = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"{_FENCE}\n{dumped}{_FENCE}\n\n{body}"


# ---------------------------------------------------------------------------
# Lenient field coercion
# ---------------------------------------------------------------------------

def normalize_type(value: Any) -> str:
    v = str(value).strip().lower() if value else ""
    return v if v in NOTE_TYPES else "reference"


def lenient_date(value: Any) -> str | None:
    """Return YYYY-MM-DD for a date-ish value, or None."""
    if value is None or value == "":
        return None
    if isinstance(value, _dt.datetime | _dt.date):
        return value.isoformat()[:10]
    s = str(value).strip()
    return s[:10] if len(s) >= 10 else None


def as_timestamp(value: Any) -> str:
    """Stringify a timestamp-ish frontmatter value (YAML may hand back datetime)."""
    if value is None:
        return ""
    if isinstance(value, _dt.datetime | _dt.date):
        return value.isoformat()
    return str(value).strip()


def as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [s.strip() for s in str(value).split(",") if s.strip()]


def first_line_summary(body: str) -> str:
    for line in body.splitlines():
        line = line.strip()
        if line:
            return line.lstrip("#").strip()
    return ""


# ---------------------------------------------------------------------------
# Markdown sections
# ---------------------------------------------------------------------------

def extract_section(body: str, heading: str) -> str | None:
    """Return the text under `## heading` up to the next heading, or None if absent."""
    target = heading.strip().lower()
    lines = body.splitlines()
    start: int | None = None
    for i, line in enumerate(lines):
        if line.startswith("## ") and line[3:].strip().lower() == target:
            start = i + 1
            break
    if start is None:
        return None
    out: list[str] = []
    for line in lines[start:]:
        if line.startswith(("## ", "# ")):
            break
        out.append(line)
    return "\n".join(out).strip()


_HEADING_LIKE_RE = re.compile(r"^(\\*)#", re.MULTILINE)
_ESCAPED_HEADING_RE = re.compile(r"^\\(\\*)#", re.MULTILINE)


def escape_headings(text: str) -> str:
    """Backslash lines starting with '#' so section text cannot end its own section.

    Lines already starting with backslashes before '#' get one more, which keeps
    unescape_headings an exact inverse.
    """
    return _HEADING_LIKE_RE.sub(r"\\\1#", text)


def unescape_headings(text: str) -> str:
    return _ESCAPED_HEADING_RE.sub(r"\1#", text)


def section_items(text: str | None) -> list[str]:
    """Bullet items of a section ("- a" / "* a" lines); plain lines count as items."""
    if not text:
        return []
    items = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith(("- ", "* ")):
            line = line[2:].strip()
        items.append(line)
    return items
