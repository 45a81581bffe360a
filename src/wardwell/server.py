"""WardwellServer: the operations exposed to a calling assistant.

Transport-agnostic. `call_tool(name, arguments)` dispatches to a method and
returns a JSON-serializable dict; engine errors come back as
{"error": message, "kind": ErrorClassName} instead of raising.

Writes go through the MutationGateway; every written path is handed to
`on_write` (the daemon's index queue) or, standalone, re-indexed inline.
"""

from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wardwell.config import WardwellConfig, load_config
from wardwell.errors import NotFoundError, ValidationError, WardwellError
from wardwell.gateway import MutationGateway
from wardwell.indexer import IndexState, VaultIndex
from wardwell.models import ChangeKind, Decision, HistoryEntry, Lesson, ProjectState
from wardwell.orchestrator import Orchestrator
from wardwell.sessions import SessionStore
from wardwell.summarizer import SummaryCache
from wardwell.vault import FileKind, Vault

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("wardwell.server")


def _jsonable(value: Any) -> Any:
    if isinstance(value, _dt.datetime | _dt.date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    return value


def _require(args: dict[str, Any], *names: str) -> None:
    missing = [n for n in names if not args.get(n)]
    if missing:
        raise ValidationError([f"'{n}' is required" for n in missing])


class WardwellServer:
    def __init__(
        self,
        config_root: Path | None = None,
        *,
        cfg: WardwellConfig | None = None,
        on_write: Callable[[Path], None] | None = None,
    ) -> None:
        self._cfg = cfg or load_config(config_root)
        self._cfg.ensure_dirs()
        c = self._cfg

        self.vault = Vault(c.vault.path, exclude=c.vault.exclude, extensions=c.vault.extensions)
        self.index = VaultIndex(
            self.vault,
            c.db_path,
            default_limit=c.search.limit,
            fallback_threshold=c.search.fallback_threshold,
            fuzzy_cutoff=c.search.fuzzy_cutoff,
        )
        self.orchestrator = Orchestrator(
            self.vault, c.domains, completed_window_days=c.orchestrator.completed_window_days,
        )
        self.sessions = SessionStore(c.sessions_db_path, resolver=self.orchestrator.resolve)
        self.orchestrator.sessions = self.sessions
        self.summaries = SummaryCache(c.summaries_dir)
        self._on_write = on_write
        self.gateway = MutationGateway(
            self.vault,
            locks_dir=c.locks_dir,
            auto_create=c.vault.auto_create,
            lock_timeout=c.vault.lock_timeout,
            on_write=self._written,
        )

    @property
    def config(self) -> WardwellConfig:
        return self._cfg

    def close(self) -> None:
        self.index.close()
        self.sessions.close()
        self.summaries.close()

    def _written(self, path: Path) -> None:
        if self._on_write is not None:
            self._on_write(path)
        else:
            self.index.handle_change(path, ChangeKind.MODIFIED)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def search(self, query: str, domain: str | None = None, limit: int | None = None) -> dict[str, Any]:
        if self.index.state is IndexState.COLD:
            self.index.rebuild()
        hits = self.index.search(query, domain=domain, limit=limit)
        out: dict[str, Any] = {"results": [h.to_dict() for h in hits]}
        if not hits and query.strip():
            suggestions = self.index.suggest(query.strip())
            if suggestions:
                out["did_you_mean"] = suggestions
        return out

    def read(self, path: str) -> dict[str, Any]:
        """A vault file's frontmatter and body; current_state.md also comes back parsed."""
        abs_path = self.vault.resolve(path)
        if not abs_path.is_file():
            msg = f"file not found: {path}"
            raise NotFoundError(msg)
        note = self.vault.read_note(abs_path)
        rel = self.vault.relpath(abs_path) or path
        out: dict[str, Any] = {
            "path": rel,
            "frontmatter": _jsonable(note.meta),
            "body": note.body,
        }

        related = []
        for other in note.meta.get("related") or []:
            try:
                other_path = self.vault.resolve(str(other))
                summary = self.vault.read_note(other_path).summary
            except (WardwellError, OSError):
                continue
            related.append({"path": str(other), "summary": summary})
        if related:
            out["related"] = related

        if abs_path.name == FileKind.STATE.value:
            domain, project = self.vault.locate(rel)
            if domain and project:
                out["snapshot"] = ProjectState.from_note(note, domain=domain, project=project).to_dict()
        return out

    def history(
        self,
        query: str | None = None,
        domain: str | None = None,
        project: str | None = None,
        since: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Project history entries from the vault plus matching session records."""
        entries = self.orchestrator.project_history(domain, project, query=query, since=since, limit=limit)
        records = self.sessions.query_history(
            domain=domain, project=project, since=since, query=query, limit=limit,
        )
        return {
            "entries": [e.to_dict() for e in entries],
            "sessions": [r.to_dict() for r in records],
        }

    def orchestrate(self, domain: str | None = None) -> dict[str, Any]:
        return self.orchestrator.prioritized_queue(domain).to_dict()

    def context(self, session_id: str | None = None, path: str | None = None) -> dict[str, Any]:
        """Context for a new session, by session id (its working directory) or by path."""
        session: dict[str, Any] | None = None
        summary: dict[str, Any] | None = None
        if session_id:
            info = self.sessions.get_session(session_id)
            if info is None:
                msg = f"session not found: {session_id}"
                raise NotFoundError(msg)
            session = info.to_dict()
            path = path or info.project_path
            entry = self.summaries.peek(info.session_id)
            if entry is not None:
                summary = {
                    "summary": entry.get("summary"),
                    "generated_at": entry.get("generated_at"),
                    "stale": entry.get("fingerprint") != info.fingerprint,
                }
        if not path:
            msg = "either 'session_id' or 'path' is required"
            raise ValidationError(msg)

        result = self.orchestrator.context_for(path)
        out = result.to_dict()
        out["text"] = self.orchestrator.render_context(result)
        if session is not None:
            out["session"] = session
            out["summary"] = summary
        return out

    def status(self) -> dict[str, Any]:
        return {"vault": str(self.vault.root), "index": self.index.stats()}

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def sync(self, domain: str, project: str, snapshot: dict[str, Any]) -> dict[str, Any]:
        state = ProjectState.from_dict(snapshot, domain=domain, project=project)
        result = self.gateway.replace_snapshot(
            domain, project, state,
            history_title=snapshot.get("history_title"),
            history_body=snapshot.get("history_body"),
        )
        out = result.to_dict()
        if result.snapshot is not None:
            out["snapshot"] = result.snapshot.to_dict()
        return out

    def decide(self, domain: str, project: str, decision: dict[str, Any]) -> dict[str, Any]:
        return self.gateway.prepend_decision(domain, project, Decision.from_dict(decision)).to_dict()

    def append_history(self, domain: str, project: str, entry: dict[str, Any]) -> dict[str, Any]:
        return self.gateway.append_history(domain, project, HistoryEntry.from_dict(entry)).to_dict()

    def lesson(self, domain: str, project: str, entry: dict[str, Any]) -> dict[str, Any]:
        return self.gateway.append_lesson(domain, project, Lesson.from_dict(entry)).to_dict()

    def reindex(self, path: str | None = None) -> dict[str, Any]:
        """Rebuild the whole index, or re-index one vault path now."""
        if path is None:
            stats = self.index.rebuild()
            if stats is None:
                return {"rebuilding": True, "started": False}
            return {"rebuilding": False, "started": True, **stats.__dict__}
        abs_path = self.vault.resolve(path)
        kind = ChangeKind.MODIFIED if abs_path.exists() else ChangeKind.REMOVED
        changed = self.index.handle_change(abs_path, kind)
        return {"path": self.vault.relpath(abs_path), "kind": kind.value, "changed": changed}

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _call_search(self, args: dict[str, Any]) -> dict[str, Any]:
        _require(args, "query")
        limit = args.get("limit")
        return self.search(args["query"], domain=args.get("domain"), limit=int(limit) if limit else None)

    def _call_read(self, args: dict[str, Any]) -> dict[str, Any]:
        _require(args, "path")
        return self.read(args["path"])

    def _call_history(self, args: dict[str, Any]) -> dict[str, Any]:
        return self.history(
            query=args.get("query"),
            domain=args.get("domain"),
            project=args.get("project"),
            since=args.get("since"),
            limit=int(args.get("limit", 20)),
        )

    def _call_orchestrate(self, args: dict[str, Any]) -> dict[str, Any]:
        return self.orchestrate(args.get("domain"))

    def _call_context(self, args: dict[str, Any]) -> dict[str, Any]:
        return self.context(session_id=args.get("session_id"), path=args.get("path"))

    def _call_status(self, args: dict[str, Any]) -> dict[str, Any]:
        return self.status()

    def _call_sync(self, args: dict[str, Any]) -> dict[str, Any]:
        _require(args, "domain", "project")
        snapshot = {k: v for k, v in args.items() if k not in ("domain", "project")}
        return self.sync(args["domain"], args["project"], snapshot)

    def _call_decide(self, args: dict[str, Any]) -> dict[str, Any]:
        _require(args, "domain", "project")
        return self.decide(args["domain"], args["project"], args)

    def _call_append_history(self, args: dict[str, Any]) -> dict[str, Any]:
        _require(args, "domain", "project")
        return self.append_history(args["domain"], args["project"], args)

    def _call_lesson(self, args: dict[str, Any]) -> dict[str, Any]:
        _require(args, "domain", "project")
        return self.lesson(args["domain"], args["project"], args)

    def _call_reindex(self, args: dict[str, Any]) -> dict[str, Any]:
        return self.reindex(args.get("path"))

    def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        dispatch = {
            "search": self._call_search,
            "read": self._call_read,
            "history": self._call_history,
            "orchestrate": self._call_orchestrate,
            "context": self._call_context,
            "status": self._call_status,
            "sync": self._call_sync,
            "decide": self._call_decide,
            "append_history": self._call_append_history,
            "lesson": self._call_lesson,
            "reindex": self._call_reindex,
        }
        if name not in dispatch:
            msg = f"Unknown tool: {name}"
            raise ValueError(msg)
        try:
            return dispatch[name](arguments or {})
        except WardwellError as exc:
            logger.info("%s failed: %s", name, exc)
            out: dict[str, Any] = {"error": str(exc), "kind": type(exc).__name__}
            if isinstance(exc, ValidationError):
                out["problems"] = exc.problems
            return out
