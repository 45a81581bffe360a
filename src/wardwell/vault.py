"""Content Store: the vault tree and its structured per-project files.

Vault is the read-side API over the layout:

    vault = Vault("/path/to/vault")
    state = vault.read_state("work", "alpha")
    decisions = vault.read_decisions("work", "alpha")
    history = vault.read_history("work", "alpha")

Layout:
    <vault>/<domain>/<project>/
        INDEX.md            # free-form project index
        current_state.md    # ProjectState snapshot (frontmatter + sections)
        decisions.md        # "# <project> Decisions" header, newest entry first
        history.jsonl       # {"_schema":"history","_version":"1.0"} header, then records
        lessons.jsonl       # {"_schema":"lessons","_version":"1.0"} header, then records

All writes go through wardwell.gateway.MutationGateway.
"""

from __future__ import annotations

import json
import os
from enum import StrEnum
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from wardwell import frontmatter
from wardwell.errors import NotFoundError, ValidationError
from wardwell.models import SCHEMA_VERSION, Decision, HistoryEntry, Lesson, ProjectState, parse_decisions

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator


class FileKind(StrEnum):
    INDEX = "INDEX.md"
    STATE = "current_state.md"
    DECISIONS = "decisions.md"
    HISTORY = "history.jsonl"
    LESSONS = "lessons.jsonl"


STREAM_SCHEMAS = {FileKind.HISTORY: "history", FileKind.LESSONS: "lessons"}

# (schema, version) -> record decoder; unknown versions pass through as raw dicts
_DECODERS: dict[tuple[str, str], Callable[[dict[str, Any]], Any]] = {
    ("history", "1.0"): HistoryEntry.from_dict,
    ("lessons", "1.0"): Lesson.from_dict,
}
_VERSION_ALIASES = {"1": "1.0", "1.0.0": "1.0"}


def validate_name(what: str, name: str) -> str:
    """Domain and project names are single, non-hidden path components."""
    if not name or not name.strip():
        msg = f"{what} name must not be empty"
        raise ValidationError(msg)
    if "/" in name or "\\" in name or name in (".", "..") or name.startswith("."):
        msg = f"invalid {what} name: {name!r}"
        raise ValidationError(msg)
    return name


def stream_header(schema: str) -> dict[str, str]:
    return {"_schema": schema, "_version": SCHEMA_VERSION}


def is_stream_header(obj: Any) -> bool:
    return isinstance(obj, dict) and "_schema" in obj


def _complete_lines(data: bytes) -> list[bytes]:
    """Split into lines, dropping a trailing line that has no newline yet."""
    lines = data.split(b"\n")
    return lines[:-1]


def read_stream(path: Path, schema: str) -> list[Any]:
    """Read an append-only JSONL stream, dispatching on its declared schema version.

    Corrupt lines are skipped. A missing header means version 1.0.
    """
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        return []
    version = SCHEMA_VERSION
    records: list[Any] = []
    for raw in _complete_lines(data):
        raw = raw.strip()
        if not raw:
            continue
        try:
            obj = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            continue
        if not isinstance(obj, dict):
            continue
        if is_stream_header(obj):
            v = str(obj.get("_version", SCHEMA_VERSION))
            version = _VERSION_ALIASES.get(v, v)
            continue
        decoder = _DECODERS.get((schema, version))
        records.append(decoder(obj) if decoder else obj)
    return records


class Vault:
    """Read access and path layout for one vault root."""

    def __init__(
        self,
        root: Path | str,
        *,
        exclude: Iterable[str] = (),
        extensions: Iterable[str] = (".md",),
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.exclude = list(exclude)
        self.extensions = tuple(e.lower() for e in extensions)

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def project_dir(self, domain: str, project: str) -> Path:
        return self.root / validate_name("domain", domain) / validate_name("project", project)

    def path_for(self, domain: str, project: str, kind: FileKind) -> Path:
        return self.project_dir(domain, project) / kind.value

    def has_project(self, domain: str, project: str) -> bool:
        return self.project_dir(domain, project).is_dir()

    def domains(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_dir() and not p.name.startswith(".") and not self.is_excluded(p.name)
        )

    def projects(self, domain: str) -> list[str]:
        d = self.root / validate_name("domain", domain)
        if not d.is_dir():
            return []
        return sorted(
            p.name for p in d.iterdir()
            if p.is_dir() and not p.name.startswith(".") and not self.is_excluded(f"{domain}/{p.name}")
        )

    def all_projects(self) -> list[tuple[str, str]]:
        return [(d, p) for d in self.domains() for p in self.projects(d)]

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def relpath(self, path: Path | str) -> str | None:
        """Vault-relative posix path, or None if path is outside the vault."""
        p = Path(path)
        if not p.is_absolute():
            return PurePosixPath(p).as_posix()
        try:
            return p.relative_to(self.root).as_posix()
        except ValueError:
            pass
        try:
            return p.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return None

    def resolve(self, rel: str) -> Path:
        """Map a vault-relative path to an absolute one, refusing to leave the vault."""
        candidate = (self.root / rel).resolve()
        root = self.root.resolve()
        if candidate != root and root not in candidate.parents:
            msg = f"path outside vault: {rel}"
            raise NotFoundError(msg)
        return candidate

    def locate(self, rel: str) -> tuple[str, str]:
        """(domain, project) a vault-relative file belongs to; empty strings when above that level."""
        parts = PurePosixPath(rel).parts
        domain = parts[0] if len(parts) >= 2 else ""
        project = parts[1] if len(parts) >= 3 else ""
        return domain, project

    def is_excluded(self, rel: str) -> bool:
        parts = PurePosixPath(rel).parts
        for pat in self.exclude:
            if fnmatch(rel, pat):
                return True
            if any(fnmatch(part, pat) for part in parts):
                return True
        return False

    def is_indexable(self, path: Path | str) -> bool:
        rel = self.relpath(path)
        if rel is None or rel in ("", "."):
            return False
        if not rel.lower().endswith(self.extensions):
            return False
        return not self.is_excluded(rel)

    def walk(self) -> Iterator[Path]:
        """Yield indexable files in sorted order, pruning excluded directories."""
        if not self.root.is_dir():
            return
        for dirpath, dirnames, filenames in os.walk(self.root):
            base = Path(dirpath)
            dirnames[:] = sorted(
                d for d in dirnames
                if not self.is_excluded(self.relpath(base / d) or d)
            )
            for name in sorted(filenames):
                p = base / name
                if self.is_indexable(p):
                    yield p

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def read_note(self, path: Path) -> frontmatter.Note:
        return frontmatter.parse(path.read_text(encoding="utf-8", errors="replace"))

    def read_state(self, domain: str, project: str) -> ProjectState | None:
        """Parsed current_state.md, or None if the project has none."""
        path = self.path_for(domain, project, FileKind.STATE)
        try:
            note = self.read_note(path)
        except FileNotFoundError:
            return None
        return ProjectState.from_note(note, domain=domain, project=project)

    def read_decisions(self, domain: str, project: str) -> list[Decision]:
        path = self.path_for(domain, project, FileKind.DECISIONS)
        try:
            return parse_decisions(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []

    def read_history(self, domain: str, project: str) -> list[Any]:
        return read_stream(self.path_for(domain, project, FileKind.HISTORY), "history")

    def read_lessons(self, domain: str, project: str) -> list[Any]:
        return read_stream(self.path_for(domain, project, FileKind.LESSONS), "lessons")
