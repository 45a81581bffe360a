"""Full-text index over vault files (SQLite FTS5).

The index is a pure derived cache: delete index.db and it is rebuilt from the
vault. One row per indexable file:

    vault_meta    id, path (unique), domain, project, title, type, status,
                  head (leading body text), mtime, fingerprint, indexed_at
    vault_search  FTS5(title, summary, tags, body), rowid = vault_meta.id
    index_state   key/value; 'built_at' marks a committed full rebuild

Entry points:
    index.rebuild()                    # full scan, all-or-nothing
    index.handle_change(path, kind)    # incremental (watcher events, writes)
    index.search(query, domain=...)    # ranked hits, fuzzy tier when sparse

States: COLD (no committed rebuild) -> REBUILDING -> CONSISTENT, back to
REBUILDING on request. COLD comes back only if index.db is deleted under us.
"""

from __future__ import annotations

import difflib
import hashlib
import logging
import re
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from wardwell import db, frontmatter
from wardwell.errors import IndexInconsistency, ValidationError
from wardwell.models import ChangeKind, SearchHit

if TYPE_CHECKING:
    from pathlib import Path

    from wardwell.vault import Vault

logger = logging.getLogger("wardwell.indexer")

_HEAD_CHARS = 400          # body prefix kept for fuzzy scoring
_SNIPPET_TOKENS = 24
_WRITE_ATTEMPTS = 3


class IndexState(StrEnum):
    COLD = "cold"
    REBUILDING = "rebuilding"
    CONSISTENT = "consistent"


@dataclass
class BuildStats:
    indexed: int = 0
    vanished: int = 0          # read during the scan, gone by commit time
    replayed: int = 0          # changes queued during the rebuild and applied after
    committed: bool = False
    elapsed: float = 0.0


@dataclass
class _Entry:
    path: str
    domain: str
    project: str
    title: str
    type: str
    status: str
    summary: str
    tags: str
    body: str
    mtime: float
    fingerprint: str


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS vault_meta (
            id INTEGER PRIMARY KEY,
            path TEXT NOT NULL UNIQUE,
            domain TEXT,
            project TEXT,
            title TEXT,
            type TEXT,
            status TEXT,
            head TEXT,
            mtime REAL,
            fingerprint TEXT,
            indexed_at TEXT
        );
        CREATE INDEX IF NOT EXISTS vault_meta_scope ON vault_meta(domain, project);

        CREATE VIRTUAL TABLE IF NOT EXISTS vault_search USING fts5(
            title,
            summary,
            tags,
            body,
            tokenize='porter unicode61'
        );

        CREATE TABLE IF NOT EXISTS index_state (
            key TEXT PRIMARY KEY,
            value TEXT
        );
    """)
    conn.commit()


def _insert(conn: sqlite3.Connection, e: _Entry) -> None:
    cur = conn.execute(
        "INSERT INTO vault_meta(path, domain, project, title, type, status, head, mtime, fingerprint, indexed_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (e.path, e.domain, e.project, e.title, e.type, e.status, e.body[:_HEAD_CHARS],
         e.mtime, e.fingerprint, datetime.now(UTC).isoformat()),
    )
    conn.execute(
        "INSERT INTO vault_search(rowid, title, summary, tags, body) VALUES (?, ?, ?, ?, ?)",
        (cur.lastrowid, e.title, e.summary, e.tags, e.body),
    )


def _delete(conn: sqlite3.Connection, where: str, args: tuple) -> int:
    ids = [r[0] for r in conn.execute(f"SELECT id FROM vault_meta WHERE {where}", args).fetchall()]  # noqa: S608
    for rid in ids:
        conn.execute("DELETE FROM vault_search WHERE rowid = ?", (rid,))
        conn.execute("DELETE FROM vault_meta WHERE id = ?", (rid,))
    return len(ids)


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------

_STOPWORDS = frozenset({
    "a", "about", "above", "after", "again", "against", "all", "am", "an",
    "and", "any", "are", "as", "at", "be", "because", "been", "before",
    "being", "below", "between", "both", "but", "by", "can", "did",
    "do", "does", "doing", "down", "during", "each", "few",
    "for", "from", "further", "had", "has", "have", "having",
    "he", "her", "here", "hers", "him", "his", "how", "i",
    "if", "in", "into", "is", "it", "its", "itself", "just", "me",
    "more", "most", "my", "no", "nor", "not", "now", "of", "off", "on",
    "once", "only", "or", "other", "our", "out", "over", "own", "same", "she",
    "should", "so", "some", "such", "than", "that", "the", "their",
    "them", "then", "there", "these", "they", "this", "those",
    "through", "to", "too", "under", "until", "up", "very", "was", "we",
    "were", "what", "when", "where", "which", "while", "who", "whom", "why",
    "will", "with", "you", "your",
})


def _build_fts_query(query: str) -> str | None:
    """Split query into OR-joined quoted prefix terms, filtering stopwords. None if empty."""
    terms = [w for w in re.split(r"[\s\W]+", query.lower()) if w and w not in _STOPWORDS]
    if not terms:
        return None
    return " OR ".join(f'"{t}"*' for t in dict.fromkeys(terms))


def _similarity(needle: str, text: str) -> float:
    """Best SequenceMatcher ratio of needle against text or any same-length word window of it."""
    text = text.lower()
    if not text:
        return 0.0
    matcher = difflib.SequenceMatcher(None, "", needle)
    best = 0.0
    words = text.split()
    n = max(1, len(needle.split()))
    candidates = [text] + [" ".join(words[i:i + n]) for i in range(max(0, len(words) - n + 1))]
    for cand in candidates:
        matcher.set_seq1(cand)
        if matcher.real_quick_ratio() <= best or matcher.quick_ratio() <= best:
            continue
        best = max(best, matcher.ratio())
    return best


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

class VaultIndex:
    """FTS5 index kept consistent with a Vault by change events and rebuilds."""

    def __init__(
        self,
        vault: Vault,
        db_path: Path,
        *,
        default_limit: int = 5,
        fallback_threshold: int = 3,
        fuzzy_cutoff: float = 0.5,
    ) -> None:
        self.vault = vault
        self.db_path = db_path
        self.default_limit = default_limit
        self.fallback_threshold = fallback_threshold
        self.fuzzy_cutoff = fuzzy_cutoff

        self._lock = threading.RLock()            # guards the connection
        self._db = db.ReopeningConnection(db_path, _ensure_schema)
        self._flag = threading.Condition()        # guards _rebuilding, _pending, _active
        self._rebuilding = False
        self._pending: dict[str, ChangeKind] = {}
        self._active = 0                          # incremental updates in flight

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        """Current connection; a deleted index.db comes back empty, i.e. COLD."""
        return self._db.get()

    def close(self) -> None:
        with self._lock:
            self._db.close()

    @property
    def state(self) -> IndexState:
        with self._flag:
            if self._rebuilding:
                return IndexState.REBUILDING
        with self._lock:
            row = self._connection().execute(
                "SELECT value FROM index_state WHERE key = 'built_at'"
            ).fetchone()
        return IndexState.CONSISTENT if row else IndexState.COLD

    def stats(self) -> dict:
        state = self.state
        with self._lock:
            conn = self._connection()
            count = conn.execute("SELECT COUNT(*) FROM vault_meta").fetchone()[0]
            row = conn.execute("SELECT value FROM index_state WHERE key = 'built_at'").fetchone()
        return {"state": state.value, "entries": count, "built_at": row[0] if row else None}

    def indexed_paths(self) -> list[str]:
        with self._lock:
            rows = self._connection().execute("SELECT path FROM vault_meta ORDER BY path").fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Reading files
    # ------------------------------------------------------------------

    def _read_entry(self, path: Path, rel: str) -> _Entry | None:
        try:
            raw = path.read_bytes()
            mtime = path.stat().st_mtime
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None
        except OSError as exc:
            logger.warning("skipping unreadable file %s: %s", rel, exc)
            return None
        text = raw.decode("utf-8", errors="replace")
        try:
            note = frontmatter.parse(text)
        except ValidationError as exc:
            logger.debug("indexing %s without frontmatter: %s", rel, exc)
            note = frontmatter.Note(body=text)
        domain, project = self.vault.locate(rel)
        return _Entry(
            path=rel,
            domain=domain,
            project=project,
            title=note.title(fallback=PurePosixPath(rel).stem),
            type=note.type,
            status=note.status or "",
            summary=note.summary,
            tags=" ".join(note.tags),
            body=note.body,
            mtime=mtime,
            fingerprint=hashlib.sha256(raw).hexdigest()[:16],
        )

    # ------------------------------------------------------------------
    # Incremental updates
    # ------------------------------------------------------------------

    def handle_change(self, path: Path | str, kind: ChangeKind) -> bool:
        """Apply one change event. Returns True if index rows changed.

        Safe to repeat: an unchanged fingerprint is a no-op and removing an
        absent path does nothing. During a rebuild the change is queued and
        applied once the rebuild has committed (or been discarded).
        """
        rel = self.vault.relpath(path)
        if rel is None or rel in ("", ".") or self.vault.is_excluded(rel):
            return False
        is_file_event = self.vault.is_indexable(rel)
        if not is_file_event and kind is not ChangeKind.REMOVED:
            return False
        with self._flag:
            if self._rebuilding:
                self._pending[rel] = kind
                return False
            self._active += 1
        try:
            return self._apply(rel, kind)
        finally:
            with self._flag:
                self._active -= 1
                self._flag.notify_all()

    def _apply(self, rel: str, kind: ChangeKind) -> bool:
        last_exc: sqlite3.Error | None = None
        for attempt in range(1, _WRITE_ATTEMPTS + 1):
            try:
                return self._apply_once(rel, kind)
            except sqlite3.OperationalError as exc:
                last_exc = exc
                logger.warning("index write failed for %s (attempt %d): %s", rel, attempt, exc)
                time.sleep(0.05 * attempt)
        raise IndexInconsistency(rel, f"index write failed after {_WRITE_ATTEMPTS} attempts: {last_exc}")

    def _apply_once(self, rel: str, kind: ChangeKind) -> bool:
        abs_path = self.vault.root / rel
        if not self.vault.is_indexable(rel):
            # a removed directory takes everything under it
            with self._lock:
                conn = self._connection()
                with conn:
                    n = _delete(conn, "substr(path, 1, ?) = ?", (len(rel) + 1, rel + "/"))
            if n:
                logger.info("removed %d entries under %s", n, rel)
            return n > 0

        entry = None if kind is ChangeKind.REMOVED else self._read_entry(abs_path, rel)
        with self._lock:
            conn = self._connection()
            if entry is None:
                with conn:
                    n = _delete(conn, "path = ?", (rel,))
                if n:
                    logger.info("removed: %s", rel)
                return n > 0
            row = conn.execute("SELECT fingerprint FROM vault_meta WHERE path = ?", (rel,)).fetchone()
            if row is not None and row[0] == entry.fingerprint:
                with conn:
                    conn.execute("UPDATE vault_meta SET mtime = ? WHERE path = ?", (entry.mtime, rel))
                return False
            with conn:
                _delete(conn, "path = ?", (rel,))
                _insert(conn, entry)
        logger.info("indexed: %s", rel)
        return True

    # ------------------------------------------------------------------
    # Full rebuild
    # ------------------------------------------------------------------

    def rebuild(self, cancel: threading.Event | None = None) -> BuildStats | None:
        """Rebuild from a clean slate. Returns None if a rebuild is already running.

        Files are read outside the connection lock; the clear-and-insert is one
        transaction, committed only if the scan ran to completion. Each file is
        re-checked for existence right before commit.
        """
        with self._flag:
            if self._rebuilding:
                logger.info("rebuild already in progress")
                return None
            self._rebuilding = True
            while self._active:
                self._flag.wait()

        stats = BuildStats()
        started = time.monotonic()
        try:
            entries: list[_Entry] = []
            cancelled = False
            for path in self.vault.walk():
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    break
                rel = self.vault.relpath(path)
                if rel is None:
                    continue
                entry = self._read_entry(path, rel)
                if entry is not None:
                    entries.append(entry)
            if cancelled:
                logger.info("rebuild cancelled after %d files, discarded", len(entries))
            else:
                stats.indexed, stats.vanished = self._commit(entries)
                stats.committed = True
        finally:
            stats.replayed = self._drain_pending()
        stats.elapsed = time.monotonic() - started
        if stats.committed:
            logger.info(
                "rebuild complete: %d files (%d vanished, %d replayed) in %.2fs",
                stats.indexed, stats.vanished, stats.replayed, stats.elapsed,
            )
        return stats

    def _commit(self, entries: list[_Entry]) -> tuple[int, int]:
        with self._lock:
            live = [e for e in entries if (self.vault.root / e.path).is_file()]
            conn = self._connection()
            try:
                with conn:
                    conn.execute("DELETE FROM vault_search")
                    conn.execute("DELETE FROM vault_meta")
                    for e in live:
                        _insert(conn, e)
                    conn.execute(
                        "INSERT OR REPLACE INTO index_state(key, value) VALUES ('built_at', ?)",
                        (datetime.now(UTC).isoformat(),),
                    )
            except sqlite3.Error as exc:
                raise IndexInconsistency(".", f"rebuild commit failed: {exc}") from exc
        return len(live), len(entries) - len(live)

    def _drain_pending(self) -> int:
        """Apply changes queued during the rebuild; clear the flag only when none are left."""
        applied = 0
        while True:
            with self._flag:
                if not self._pending:
                    self._rebuilding = False
                    return applied
                batch, self._pending = self._pending, {}
            for rel, kind in sorted(batch.items()):
                try:
                    self._apply(rel, kind)
                except IndexInconsistency:
                    logger.exception("queued change not applied: %s", rel)
                applied += 1

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        *,
        domain: str | None = None,
        project: str | None = None,
        limit: int | None = None,
    ) -> list[SearchHit]:
        """Ranked hits: FTS (bm25, ties by path), then fuzzy matches when FTS is sparse."""
        limit = self.default_limit if limit is None else limit
        if not query or not query.strip() or limit <= 0:
            return []

        hits = self._search_fts(query, domain, project, limit)
        if len(hits) < self.fallback_threshold and len(hits) < limit:
            seen = {h.path for h in hits}
            hits += self._search_fuzzy(query, domain, project, limit - len(hits), seen)
        return self._verify(hits)

    def _scope(self, domain: str | None, project: str | None) -> tuple[str, list[str]]:
        clauses, args = [], []
        if domain:
            clauses.append("m.domain = ?")
            args.append(domain)
        if project:
            clauses.append("m.project = ?")
            args.append(project)
        return "".join(f" AND {c}" for c in clauses), args

    def _search_fts(self, query: str, domain: str | None, project: str | None, limit: int) -> list[SearchHit]:
        fts_query = _build_fts_query(query)
        if fts_query is None:
            return []
        where, args = self._scope(domain, project)
        sql = (
            "SELECT m.path, m.domain, m.project, m.title, "
            f"snippet(vault_search, 3, '', '', '...', {_SNIPPET_TOKENS}), "
            "bm25(vault_search, 4.0, 2.0, 2.0, 1.0) AS rank "
            "FROM vault_search JOIN vault_meta m ON m.id = vault_search.rowid "
            f"WHERE vault_search MATCH ?{where} "
            "ORDER BY rank, m.path LIMIT ?"
        )
        with self._lock:
            try:
                rows = self._connection().execute(sql, (fts_query, *args, limit)).fetchall()
            except sqlite3.OperationalError as exc:
                logger.warning("fts query failed for %r: %s", query, exc)
                return []
        return [
            SearchHit(path=r[0], domain=r[1] or "", project=r[2] or "", title=r[3] or "",
                      snippet=r[4] or "", score=-float(r[5]), tier="primary")
            for r in rows
        ]

    def _search_fuzzy(
        self,
        query: str,
        domain: str | None,
        project: str | None,
        limit: int,
        seen: set[str],
    ) -> list[SearchHit]:
        needle = query.lower().strip()
        where, args = self._scope(domain, project)
        with self._lock:
            rows = self._connection().execute(
                f"SELECT m.path, m.domain, m.project, m.title, m.head FROM vault_meta m WHERE 1=1{where}",  # noqa: S608
                args,
            ).fetchall()
        scored: list[tuple[float, SearchHit]] = []
        for path, dom, proj, title, head in rows:
            if path in seen:
                continue
            score = max(
                _similarity(needle, PurePosixPath(path).stem.replace("_", " ").replace("-", " ")),
                _similarity(needle, title or ""),
                _similarity(needle, head or ""),
            )
            if score >= self.fuzzy_cutoff:
                snippet = " ".join((head or "").split())[:160]
                scored.append((score, SearchHit(path=path, domain=dom or "", project=proj or "",
                                                title=title or "", snippet=snippet,
                                                score=round(score, 4), tier="fuzzy")))
        scored.sort(key=lambda s: (-s[0], s[1].path))
        return [hit for _, hit in scored[:limit]]

    def _verify(self, hits: list[SearchHit]) -> list[SearchHit]:
        """Drop hits whose file is gone and re-index them; refresh hits whose file changed."""
        out = []
        for hit in hits:
            abs_path = self.vault.root / hit.path
            if not abs_path.is_file():
                logger.warning("%s", IndexInconsistency(hit.path, "indexed file no longer exists"))
                self._repair(abs_path, ChangeKind.REMOVED)
                continue
            out.append(hit)
            with self._lock:
                row = self._connection().execute(
                    "SELECT mtime FROM vault_meta WHERE path = ?", (hit.path,)
                ).fetchone()
            try:
                if row is not None and abs_path.stat().st_mtime > (row[0] or 0):
                    self._repair(abs_path, ChangeKind.MODIFIED)
            except FileNotFoundError:
                self._repair(abs_path, ChangeKind.REMOVED)
        return out

    def _repair(self, path: Path, kind: ChangeKind) -> None:
        try:
            self.handle_change(path, kind)
        except IndexInconsistency:
            logger.exception("localized re-index failed: %s", path)

    def suggest(self, term: str, limit: int = 3) -> list[str]:
        """Titles close to term, for 'did you mean' hints when a search is empty."""
        with self._lock:
            rows = self._connection().execute("SELECT DISTINCT title FROM vault_meta").fetchall()
        titles = [r[0] for r in rows if r[0]]
        return difflib.get_close_matches(term, titles, n=limit, cutoff=0.6)
