"""Data models for vault project state, append-only streams and derived records."""

from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from wardwell.errors import ValidationError
from wardwell.frontmatter import (
    as_timestamp,
    escape_headings,
    extract_section,
    render,
    section_items,
    unescape_headings,
)

if TYPE_CHECKING:
    from pathlib import Path

    from wardwell.frontmatter import Note

SCHEMA_VERSION = "1.0"

STATUSES = ("active", "blocked", "paused", "completed", "resolved", "abandoned", "superseded")

_DECISION_RE = re.compile(r"^## (.+?) — (.+?)[ \t]*$", re.MULTILINE)
_DECISION_RULE = "---"


def now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _as_lines(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return section_items(str(value))


def _opt(value: Any) -> str | None:
    s = str(value).strip() if value is not None else ""
    return s or None


def _text_section(body: str, heading: str) -> str:
    return unescape_headings(extract_section(body, heading) or "")


# ---------------------------------------------------------------------------
# Project state snapshot (current_state.md)
# ---------------------------------------------------------------------------

@dataclass
class ProjectState:
    """The single current description of a project. Always written whole."""

    project: str
    domain: str
    status: str
    focus: str
    next_action: str
    commit_message: str
    why_this_matters: str | None = None
    open_questions: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    waiting_on: list[str] = field(default_factory=list)
    updated: str = ""
    source: str = "wardwell"

    _REQUIRED = ("status", "focus", "next_action", "commit_message")

    @classmethod
    def from_dict(cls, d: dict[str, Any], *, domain: str = "", project: str = "") -> ProjectState:
        return cls(
            project=project or str(d.get("project", "")),
            domain=domain or str(d.get("domain", "")),
            status=str(d.get("status") or "").strip().lower(),
            focus=str(d.get("focus") or "").strip(),
            next_action=str(d.get("next_action") or "").strip(),
            commit_message=str(d.get("commit_message") or "").strip(),
            why_this_matters=_opt(d.get("why_this_matters")),
            open_questions=_as_lines(d.get("open_questions")),
            blockers=_as_lines(d.get("blockers")),
            waiting_on=_as_lines(d.get("waiting_on")),
            updated=str(d.get("updated") or ""),
            source=str(d.get("source") or "wardwell"),
        )

    @classmethod
    def from_note(cls, note: Note, *, domain: str, project: str) -> ProjectState:
        """Read a snapshot back out of a parsed current_state.md."""
        body = note.body
        return cls(
            project=project or str(note.meta.get("project") or ""),
            domain=domain or str(note.meta.get("domain") or note.meta.get("context") or ""),
            status=str(note.meta.get("status") or "").strip().lower(),
            focus=_text_section(body, "Focus"),
            next_action=_text_section(body, "Next Action"),
            commit_message=_text_section(body, "Commit Message"),
            why_this_matters=_text_section(body, "Why This Matters") or None,
            open_questions=section_items(extract_section(body, "Open Questions")),
            blockers=section_items(extract_section(body, "Blockers")),
            waiting_on=section_items(extract_section(body, "Waiting On")),
            updated=as_timestamp(note.meta.get("updated")),
            source=str(note.meta.get("source") or ""),
        )

    def validate(self) -> None:
        problems = [f"missing required field: {name}" for name in self._REQUIRED if not getattr(self, name)]
        if self.status and self.status not in STATUSES:
            problems.append(f"unknown status {self.status!r} (expected one of {', '.join(STATUSES)})")
        for name in ("open_questions", "blockers", "waiting_on"):
            if any("\n" in item for item in getattr(self, name)):
                problems.append(f"{name} items must be single lines")
        if problems:
            raise ValidationError(problems)

    def stamped(self, when: str | None = None) -> ProjectState:
        return replace(self, updated=when or now_iso())

    def to_markdown(self) -> str:
        meta = {
            "project": self.project,
            "domain": self.domain,
            "type": "project",
            "status": self.status,
            "updated": self.updated,
            "source": self.source,
        }
        lines = [f"# {self.project}", "", "## Focus", escape_headings(self.focus), ""]
        if self.why_this_matters:
            lines += ["## Why This Matters", escape_headings(self.why_this_matters), ""]
        lines += ["## Next Action", escape_headings(self.next_action), ""]
        for heading, items in (
            ("Open Questions", self.open_questions),
            ("Blockers", self.blockers),
            ("Waiting On", self.waiting_on),
        ):
            if items:
                lines += [f"## {heading}", *(f"- {item}" for item in items), ""]
        lines += ["## Commit Message", escape_headings(self.commit_message), ""]
        return render(meta, "\n".join(lines))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Decisions (decisions.md, newest first)
# ---------------------------------------------------------------------------

@dataclass
class Decision:
    title: str
    body: str
    date: str = ""

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Decision:
        return cls(
            title=str(d.get("title") or "").strip(),
            body=str(d.get("body") or "").strip(),
            date=str(d.get("date") or ""),
        )

    def validate(self) -> None:
        problems = []
        if not self.title:
            problems.append("missing required field: title")
        elif "\n" in self.title:
            problems.append("title must be a single line")
        if not self.body:
            problems.append("missing required field: body")
        if not problems:
            sample = replace(self, date=self.date or "1970-01-01 00:00")
            parsed = [(d.title, d.body) for d in parse_decisions(sample.to_markdown())]
            if parsed != [(self.title.strip(), self.body.strip())]:
                problems.append("body must not contain a '---' rule followed by a decision heading")
        if problems:
            raise ValidationError(problems)

    def to_markdown(self) -> str:
        return f"## {self.date} — {self.title}\n\n{self.body}\n\n{_DECISION_RULE}\n\n"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def decisions_header(project: str) -> str:
    return f"# {project} Decisions\n\n"


def parse_decisions(text: str) -> list[Decision]:
    """Parse decisions.md into records, in file order (newest first).

    An entry starts at the first decision heading or at one right after a
    `---` rule; other rules and headings belong to the body they sit in.
    """
    starts: list[re.Match[str]] = []
    for m in _DECISION_RE.finditer(text):
        before = text[:m.start()].rstrip()
        if not starts or before == _DECISION_RULE or before.endswith("\n" + _DECISION_RULE):
            starts.append(m)
    out: list[Decision] = []
    for i, m in enumerate(starts):
        end = starts[i + 1].start() if i + 1 < len(starts) else len(text)
        body = text[m.end():end].strip().removesuffix(_DECISION_RULE).strip()
        out.append(Decision(title=m.group(2), body=body, date=m.group(1).strip()))
    return out


# ---------------------------------------------------------------------------
# Append-only streams (history.jsonl, lessons.jsonl)
# ---------------------------------------------------------------------------

@dataclass
class HistoryEntry:
    title: str
    date: str = ""
    status: str | None = None
    focus: str | None = None
    next_action: str | None = None
    commit: str | None = None
    body: str | None = None
    source: str = "wardwell"

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> HistoryEntry:
        return cls(
            title=str(d.get("title") or "").strip(),
            date=str(d.get("date") or ""),
            status=_opt(d.get("status")),
            focus=_opt(d.get("focus")),
            next_action=_opt(d.get("next_action")),
            commit=_opt(d.get("commit")),
            body=_opt(d.get("body")),
            source=str(d.get("source") or "wardwell"),
        )

    @classmethod
    def from_snapshot(cls, state: ProjectState, *, title: str | None = None, body: str | None = None) -> HistoryEntry:
        return cls(
            title=title or state.commit_message,
            date=state.updated or now_iso(),
            status=state.status,
            focus=state.focus,
            next_action=state.next_action,
            commit=state.commit_message,
            body=body,
            source=state.source,
        )

    def validate(self) -> None:
        if not self.title:
            msg = "missing required field: title"
            raise ValidationError(msg)

    def matches(self, needle: str) -> bool:
        needle = needle.lower()
        return any(needle in (v or "").lower() for v in (self.title, self.body, self.focus, self.commit))

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Lesson:
    title: str
    what_happened: str
    root_cause: str
    prevention: str
    date: str = ""
    source: str = "wardwell"

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Lesson:
        return cls(
            title=str(d.get("title") or "").strip(),
            what_happened=str(d.get("what_happened") or "").strip(),
            root_cause=str(d.get("root_cause") or "").strip(),
            prevention=str(d.get("prevention") or "").strip(),
            date=str(d.get("date") or ""),
            source=str(d.get("source") or "wardwell"),
        )

    def validate(self) -> None:
        problems = [
            f"missing required field: {name}"
            for name in ("title", "what_happened", "root_cause", "prevention")
            if not getattr(self, name)
        ]
        if problems:
            raise ValidationError(problems)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Results and derived records
# ---------------------------------------------------------------------------

@dataclass
class WriteResult:
    """Outcome of a gateway write. degraded=True means the primary file was written
    but a secondary step (derived history append) was not; see pending_history."""

    path: Path
    written: bool = True
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)
    snapshot: ProjectState | None = None
    pending_history: HistoryEntry | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "path": str(self.path),
            "written": self.written,
            "degraded": self.degraded,
        }
        if self.warnings:
            d["warnings"] = list(self.warnings)
        if self.pending_history is not None:
            d["pending_history"] = self.pending_history.to_dict()
        return d


@dataclass
class SearchHit:
    path: str
    domain: str
    project: str
    title: str
    snippet: str
    score: float
    tier: str = "primary"      # primary | fuzzy

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRecord:
    """One text-bearing line of an ingested session log."""

    session_id: str
    source_path: str
    timestamp: str
    role: str
    text: str
    domain: str | None = None
    project: str | None = None
    id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ChangeKind(StrEnum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    """A filesystem change reported by the watcher (delivered at least once)."""

    kind: ChangeKind
    path: Path
    timestamp: float = field(default_factory=time.time)
