"""Mutation Gateway: the only writer of structured project files.

Per-file write semantics:
    current_state.md   whole-file replace (temp write + fsync + rename)
    decisions.md       read, insert new entry under the header, whole-file replace
    history.jsonl      append one line (schema header written first if absent)
    lessons.jsonl      append one line (same discipline, separate stream)

Every operation on a (domain, project, file kind) holds that file's lock:
a threading.Lock for callers in this process plus fcntl.flock on a sidecar
file under <index dir>/locks/ for anything else running against the vault.
Targets are renamed over on every replace, so the lock cannot live on them.

Appends go out as a single os.write of a complete line; readers drop a
trailing line with no newline, so a half-written record is never observed.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import threading
import time
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from wardwell.errors import ConflictError, NotFoundError, WardwellError
from wardwell.models import HistoryEntry, WriteResult, decisions_header, now_iso
from wardwell.vault import STREAM_SCHEMAS, FileKind, is_stream_header, stream_header

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from wardwell.models import Decision, Lesson, ProjectState
    from wardwell.vault import Vault

logger = logging.getLogger("wardwell.gateway")

_LOCK_POLL = 0.02      # first back-off step while waiting on flock
_LOCK_POLL_MAX = 0.25


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------

class LockRegistry:
    """One lock per (domain, project, kind); acquisition gives up after `timeout` seconds."""

    def __init__(self, locks_dir: Path | None = None, timeout: float = 5.0) -> None:
        self.locks_dir = locks_dir
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str, FileKind], threading.Lock] = {}

    def _thread_lock(self, key: tuple[str, str, FileKind]) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextlib.contextmanager
    def hold(self, domain: str, project: str, kind: FileKind) -> Iterator[None]:
        lock = self._thread_lock((domain, project, kind))
        if not lock.acquire(timeout=self.timeout):
            msg = f"timed out after {self.timeout:.1f}s waiting for {domain}/{project}/{kind.value}"
            raise ConflictError(msg)
        try:
            if self.locks_dir is None:
                yield
                return
            lock_path = self.locks_dir / domain / project / f"{kind.value}.lock"
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            with lock_path.open("a") as f:
                self._flock(f, f"{domain}/{project}/{kind.value}")
                try:
                    yield
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)
        finally:
            lock.release()

    def _flock(self, f: Any, label: str) -> None:
        deadline = time.monotonic() + self.timeout
        delay = _LOCK_POLL
        attempts = 0
        while True:
            try:
                fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                attempts += 1
                if time.monotonic() >= deadline:
                    msg = f"lock on {label} still held by another process after {attempts} attempts"
                    raise ConflictError(msg) from None
                time.sleep(delay)
                delay = min(delay * 2, _LOCK_POLL_MAX)


# ---------------------------------------------------------------------------
# File primitives
# ---------------------------------------------------------------------------

def atomic_write(path: Path, text: str) -> None:
    """Write text to a temp file beside path, fsync, then rename over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        tmp.replace(path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            tmp.unlink()
        raise


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        n = os.write(fd, view)
        view = view[n:]


def _encode(record: dict[str, Any]) -> bytes:
    return (json.dumps(record, ensure_ascii=False) + "\n").encode("utf-8")


def _has_header(path: Path) -> bool:
    with path.open("rb") as f:
        first = f.readline()
    try:
        return is_stream_header(json.loads(first))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return False


def append_record(path: Path, schema: str, record: dict[str, Any]) -> None:
    """Append one JSON line, writing the schema header first when the stream has none."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = _encode(record)
    size = path.stat().st_size if path.exists() else 0

    if size > 0 and not _has_header(path):
        existing = path.read_bytes()
        if not existing.endswith(b"\n"):
            existing += b"\n"
        body = _encode(stream_header(schema)) + existing + line
        atomic_write(path, body.decode("utf-8", errors="replace"))
        return

    payload = _encode(stream_header(schema)) + line if size == 0 else line
    if size > 0:
        with path.open("rb") as f:
            f.seek(-1, os.SEEK_END)
            if f.read(1) != b"\n":
                payload = b"\n" + payload
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    try:
        _write_all(fd, payload)
        os.fsync(fd)
    finally:
        os.close(fd)


def _split_decisions(text: str, project: str) -> tuple[str, str]:
    """(header, entries) of a decisions file; a missing header is synthesized."""
    if not text.strip():
        return decisions_header(project), ""
    lines = text.splitlines(keepends=True)
    if not lines[0].startswith("# "):
        return decisions_header(project), text
    i = 1
    while i < len(lines) and not lines[i].strip():
        i += 1
    return lines[0].rstrip("\n") + "\n\n", "".join(lines[i:])


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class MutationGateway:
    """Validated, serialized writes to structured project files."""

    def __init__(
        self,
        vault: Vault,
        *,
        locks_dir: Path | None = None,
        auto_create: bool = True,
        lock_timeout: float = 5.0,
        on_write: Callable[[Path], None] | None = None,
    ) -> None:
        self.vault = vault
        self.auto_create = auto_create
        self.locks = LockRegistry(locks_dir, timeout=lock_timeout)
        self.on_write = on_write

    def _ensure_project(self, domain: str, project: str) -> Path:
        pdir = self.vault.project_dir(domain, project)
        if pdir.is_dir():
            return pdir
        if not self.auto_create:
            msg = f"project not found: {domain}/{project}"
            raise NotFoundError(msg)
        pdir.mkdir(parents=True, exist_ok=True)
        logger.info("project created: %s/%s", domain, project)
        return pdir

    def _notify(self, path: Path) -> None:
        if self.on_write is None:
            return
        try:
            self.on_write(path)
        except Exception:
            logger.exception("write notification failed: %s", path)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def replace_snapshot(
        self,
        domain: str,
        project: str,
        state: ProjectState,
        *,
        record_history: bool = True,
        history_title: str | None = None,
        history_body: str | None = None,
    ) -> WriteResult:
        """Replace current_state.md with a full snapshot, then append a derived history entry.

        The two files are not written transactionally. If the history append
        fails the snapshot stays written and the result is degraded, carrying
        the unwritten entry in pending_history for the caller to re-append.
        """
        state = replace(state, domain=domain, project=project)
        state.validate()
        self._ensure_project(domain, project)
        state = state.stamped()
        path = self.vault.path_for(domain, project, FileKind.STATE)

        with self.locks.hold(domain, project, FileKind.STATE):
            atomic_write(path, state.to_markdown())
        logger.info("snapshot written: %s/%s status=%s", domain, project, state.status)
        self._notify(path)

        result = WriteResult(path=path, snapshot=state)
        if not record_history:
            return result

        entry = HistoryEntry.from_snapshot(state, title=history_title, body=history_body)
        try:
            self.append_history(domain, project, entry)
        except (OSError, WardwellError) as exc:
            logger.warning("history append failed after snapshot %s/%s: %s", domain, project, exc)
            result.degraded = True
            result.warnings.append(f"history append failed: {exc}")
            result.pending_history = entry
        return result

    def prepend_decision(self, domain: str, project: str, decision: Decision) -> WriteResult:
        decision.validate()
        self._ensure_project(domain, project)
        if not decision.date:
            decision = replace(decision, date=datetime.now(UTC).strftime("%Y-%m-%d %H:%M"))
        path = self.vault.path_for(domain, project, FileKind.DECISIONS)

        with self.locks.hold(domain, project, FileKind.DECISIONS):
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                text = ""
            header, entries = _split_decisions(text, project)
            atomic_write(path, header + decision.to_markdown() + entries)
        logger.info("decision recorded: %s/%s %r", domain, project, decision.title)
        self._notify(path)
        return WriteResult(path=path)

    def append_history(self, domain: str, project: str, entry: HistoryEntry) -> WriteResult:
        entry.validate()
        self._ensure_project(domain, project)
        if not entry.date:
            entry = replace(entry, date=now_iso())
        return self._append(domain, project, FileKind.HISTORY, entry.to_dict())

    def append_lesson(self, domain: str, project: str, lesson: Lesson) -> WriteResult:
        lesson.validate()
        self._ensure_project(domain, project)
        if not lesson.date:
            lesson = replace(lesson, date=datetime.now(UTC).strftime("%Y-%m-%d"))
        return self._append(domain, project, FileKind.LESSONS, lesson.to_dict())

    def _append(self, domain: str, project: str, kind: FileKind, record: dict[str, Any]) -> WriteResult:
        path = self.vault.path_for(domain, project, kind)
        with self.locks.hold(domain, project, kind):
            append_record(path, STREAM_SCHEMAS[kind], record)
        logger.info("%s appended: %s/%s", STREAM_SCHEMAS[kind], domain, project)
        self._notify(path)
        return WriteResult(path=path)
