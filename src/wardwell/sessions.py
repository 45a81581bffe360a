"""Session Store: incremental ingestion of assistant session logs into sessions.db.

Session logs are append-only JSONL, one file per session, grouped in a
directory per working directory (Claude Code layout):

    ~/.claude/projects/-home-me-Code-alpha/<session-id>.jsonl

Each source file has a byte-offset cursor. Only newline-terminated lines are
consumed; the records and the advanced cursor commit in one transaction per
file, so an interrupted pass resumes exactly where it stopped and re-running
ingest over unchanged logs adds nothing. A file that shrank or was replaced
(inode change) is dropped and ingested again from the start.

Tables:
    sources   path, inode, byte_offset, updated_at
    sessions  session_id, source_path, project_path, domain, project,
              first_at, last_at, user_messages, assistant_messages, fingerprint, size
    records   session_id, source_path, byte_offset, timestamp, role, text
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wardwell import db
from wardwell.errors import IngestionError
from wardwell.models import SessionRecord

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable, Iterable

logger = logging.getLogger("wardwell.sessions")

_MAX_ERRORS_KEPT = 50


@dataclass
class IngestStats:
    files: int = 0
    records: int = 0
    malformed: int = 0
    reset: int = 0
    cancelled: bool = False
    errors: list[IngestionError] = field(default_factory=list)


@dataclass
class SessionInfo:
    session_id: str
    source_path: str
    project_path: str
    domain: str | None
    project: str | None
    first_at: str | None
    last_at: str | None
    user_messages: int
    assistant_messages: int
    fingerprint: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS sources (
            path TEXT PRIMARY KEY,
            inode INTEGER,
            byte_offset INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS sessions (
            session_id TEXT PRIMARY KEY,
            source_path TEXT,
            project_path TEXT,
            domain TEXT,
            project TEXT,
            first_at TEXT,
            last_at TEXT,
            user_messages INTEGER DEFAULT 0,
            assistant_messages INTEGER DEFAULT 0,
            fingerprint TEXT DEFAULT '',
            size INTEGER DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS records (
            id INTEGER PRIMARY KEY,
            session_id TEXT NOT NULL,
            source_path TEXT NOT NULL,
            byte_offset INTEGER NOT NULL,
            timestamp TEXT,
            role TEXT,
            text TEXT,
            UNIQUE (source_path, byte_offset)
        );
        CREATE INDEX IF NOT EXISTS records_session ON records(session_id, byte_offset);
        CREATE INDEX IF NOT EXISTS records_time ON records(timestamp);
    """)
    conn.commit()


# ---------------------------------------------------------------------------
# Record parsing
# ---------------------------------------------------------------------------

def decode_project_dir(name: str) -> str:
    """'-home-me-Code-alpha' -> '/home/me/Code/alpha' (lossy for names containing dashes)."""
    return name.replace("-", "/") if name.startswith("-") else name


def extract_text(obj: dict[str, Any]) -> str:
    """Text of a log record: message.content as a string or a list of text blocks."""
    msg = obj.get("message")
    content = msg.get("content") if isinstance(msg, dict) else obj.get("content", obj.get("text"))
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [
            str(block.get("text", "")).strip()
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


def record_role(obj: dict[str, Any]) -> str:
    msg = obj.get("message")
    if isinstance(msg, dict) and msg.get("role"):
        return str(msg["role"])
    return str(obj.get("role") or obj.get("type") or "")


@dataclass
class _SessionAgg:
    session_id: str
    project_path: str
    explicit_path: bool = False      # project_path came from a record's cwd
    first_at: str | None = None
    last_at: str | None = None
    user_messages: int = 0
    assistant_messages: int = 0

    def add(self, timestamp: str | None, role: str) -> None:
        if timestamp:
            self.first_at = min(self.first_at or timestamp, timestamp)
            self.last_at = max(self.last_at or timestamp, timestamp)
        if role == "user":
            self.user_messages += 1
        elif role == "assistant":
            self.assistant_messages += 1


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SessionStore:
    """Queryable, incrementally ingested copy of session logs."""

    def __init__(
        self,
        db_path: Path,
        *,
        resolver: Callable[[str], tuple[str | None, str | None]] | None = None,
    ) -> None:
        self.db_path = db_path
        self.resolver = resolver
        self._lock = threading.RLock()
        self._db = db.ReopeningConnection(db_path, _ensure_schema)

    def close(self) -> None:
        with self._lock:
            self._db.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, sources: Iterable[Path], cancel: threading.Event | None = None) -> IngestStats:
        """Ingest new lines from each source (a log file or a directory of *.jsonl)."""
        stats = IngestStats()
        files: list[Path] = []
        for src in sources:
            src = Path(src).expanduser()
            if src.is_dir():
                files.extend(sorted(src.rglob("*.jsonl")))
            elif src.is_file():
                files.append(src)
            else:
                logger.debug("session source missing: %s", src)

        for path in files:
            if cancel is not None and cancel.is_set():
                stats.cancelled = True
                logger.info("ingest cancelled after %d files", stats.files)
                break
            try:
                self._ingest_file(path, stats)
            except OSError as exc:
                logger.warning("cannot read session log %s: %s", path, exc)
        if stats.records or stats.malformed:
            logger.info(
                "ingested %d records from %d files (%d malformed)",
                stats.records, stats.files, stats.malformed,
            )
        return stats

    def _ingest_file(self, path: Path, stats: IngestStats) -> None:
        key = str(path)
        st = path.stat()
        with self._lock:
            conn = self._db.get()
            row = conn.execute("SELECT inode, byte_offset FROM sources WHERE path = ?", (key,)).fetchone()
            offset = 0
            if row is not None:
                offset = row[1]
                if row[0] != st.st_ino or st.st_size < offset:
                    logger.info("session log truncated or replaced, re-ingesting: %s", path)
                    with conn:
                        conn.execute("DELETE FROM records WHERE source_path = ?", (key,))
                        conn.execute("DELETE FROM sessions WHERE source_path = ?", (key,))
                        conn.execute("DELETE FROM sources WHERE path = ?", (key,))
                    offset = 0
                    stats.reset += 1
        if st.st_size <= offset:
            return

        with path.open("rb") as f:
            f.seek(offset)
            data = f.read(st.st_size - offset)
        end = data.rfind(b"\n")
        if end == -1:
            return  # only a partial line so far
        chunk = data[:end + 1]

        rows: list[tuple[str, int, str | None, str, str]] = []
        aggs: dict[str, _SessionAgg] = {}
        default_project = decode_project_dir(path.parent.name)
        pos = offset
        for raw in chunk.split(b"\n")[:-1]:
            line_offset = pos
            pos += len(raw) + 1
            if not raw.strip():
                continue
            try:
                obj = json.loads(raw)
                if not isinstance(obj, dict):
                    msg = "record is not an object"
                    raise TypeError(msg)
            except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
                stats.malformed += 1
                err = IngestionError(path, line_offset, str(exc))
                if len(stats.errors) < _MAX_ERRORS_KEPT:
                    stats.errors.append(err)
                logger.debug("skipping malformed record: %s", err)
                continue

            sid = str(obj.get("sessionId") or obj.get("session_id") or path.stem)
            agg = aggs.get(sid)
            if agg is None:
                agg = aggs[sid] = _SessionAgg(sid, default_project)
            if obj.get("cwd"):
                agg.project_path = str(obj["cwd"])
                agg.explicit_path = True
            text = extract_text(obj)
            if not text:
                continue
            timestamp = obj.get("timestamp")
            timestamp = str(timestamp) if timestamp else None
            role = record_role(obj)
            agg.add(timestamp, role)
            rows.append((sid, line_offset, timestamp, role, text))

        with self._lock:
            conn = self._db.get()
            with conn:
                for sid, line_offset, timestamp, role, text in rows:
                    conn.execute(
                        "INSERT OR IGNORE INTO records(session_id, source_path, byte_offset, timestamp, role, text) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (sid, key, line_offset, timestamp, role, text),
                    )
                for agg in aggs.values():
                    self._merge_session(conn, agg, key, chunk, offset + len(chunk))
                conn.execute(
                    "INSERT OR REPLACE INTO sources(path, inode, byte_offset, updated_at) VALUES (?, ?, ?, ?)",
                    (key, st.st_ino, offset + len(chunk), datetime.now(UTC).isoformat()),
                )
        stats.files += 1
        stats.records += len(rows)

    def _merge_session(self, conn: sqlite3.Connection, agg: _SessionAgg, source: str, chunk: bytes, size: int) -> None:
        row = conn.execute(
            "SELECT first_at, last_at, user_messages, assistant_messages, fingerprint, project_path "
            "FROM sessions WHERE session_id = ?",
            (agg.session_id,),
        ).fetchone()
        first_at, last_at, users, assistants, fingerprint, project_path = row or (None, None, 0, 0, "", None)
        if agg.explicit_path or not project_path:
            project_path = agg.project_path
        if agg.first_at:
            first_at = min(first_at or agg.first_at, agg.first_at)
            last_at = max(last_at or agg.last_at, agg.last_at)
        fingerprint = hashlib.sha256((fingerprint or "").encode() + chunk).hexdigest()[:16]
        domain, project = self.resolver(project_path) if self.resolver else (None, None)
        conn.execute(
            "INSERT OR REPLACE INTO sessions(session_id, source_path, project_path, domain, project, "
            "first_at, last_at, user_messages, assistant_messages, fingerprint, size) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (agg.session_id, source, project_path, domain, project, first_at, last_at,
             users + agg.user_messages, assistants + agg.assistant_messages, fingerprint, size),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query_history(
        self,
        *,
        domain: str | None = None,
        project: str | None = None,
        since: str | None = None,
        until: str | None = None,
        query: str | None = None,
        limit: int = 50,
    ) -> list[SessionRecord]:
        """Records matching the filters, most recent first.

        since/until compare as ISO strings, so a bare date ("2026-10-01") works.
        """
        clauses, args = [], []
        if domain:
            clauses.append("s.domain = ?")
            args.append(domain)
        if project:
            clauses.append("lower(s.project) = lower(?)")
            args.append(project)
        if since:
            clauses.append("r.timestamp >= ?")
            args.append(since)
        if until:
            clauses.append("r.timestamp < ?")
            args.append(until)
        if query:
            escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            clauses.append("r.text LIKE ? ESCAPE '\\'")
            args.append(f"%{escaped}%")
        where = " AND ".join(clauses) or "1=1"
        sql = (
            "SELECT r.id, r.session_id, r.source_path, r.timestamp, r.role, r.text, s.domain, s.project "
            "FROM records r LEFT JOIN sessions s ON s.session_id = r.session_id "
            f"WHERE {where} ORDER BY r.timestamp DESC, r.id DESC LIMIT ?"  # noqa: S608
        )
        with self._lock:
            rows = self._db.get().execute(sql, (*args, limit)).fetchall()
        return [
            SessionRecord(id=r[0], session_id=r[1], source_path=r[2], timestamp=r[3] or "",
                          role=r[4] or "", text=r[5] or "", domain=r[6], project=r[7])
            for r in rows
        ]

    def _session_rows(self, where: str = "1=1", args: tuple = ()) -> list[SessionInfo]:
        with self._lock:
            rows = self._db.get().execute(
                "SELECT session_id, source_path, project_path, domain, project, first_at, last_at, "
                f"user_messages, assistant_messages, fingerprint, size FROM sessions WHERE {where} "  # noqa: S608
                "ORDER BY last_at DESC, session_id",
                args,
            ).fetchall()
        return [SessionInfo(*r) for r in rows]

    def list_sessions(self) -> list[SessionInfo]:
        return self._session_rows()

    def get_session(self, session_id: str) -> SessionInfo | None:
        rows = self._session_rows("session_id = ?", (session_id,))
        if rows:
            return rows[0]
        prefixed = self._session_rows("session_id LIKE ?", (session_id + "%",))
        return prefixed[0] if prefixed else None

    def conversation(self, session_id: str) -> list[tuple[str, str]]:
        """(role, text) pairs of a session in log order."""
        with self._lock:
            rows = self._db.get().execute(
                "SELECT role, text FROM records WHERE session_id = ? ORDER BY source_path, byte_offset",
                (session_id,),
            ).fetchall()
        return [(r[0] or "", r[1] or "") for r in rows]
