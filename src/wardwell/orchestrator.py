"""Orchestrator: read-time ranking of vault projects and session-start context.

Holds no state of its own. Every call re-reads current_state.md files, so a
snapshot the user just edited by hand is reflected immediately.

    orch = Orchestrator(vault, cfg.domains, completed_window_days=14)
    queue = orch.prioritized_queue()            # active / blocked / completed / missing
    ctx = orch.context_for("~/Code/work/alpha")
    text = orch.render_context(ctx)              # "" when nothing matched
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from fnmatch import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wardwell.errors import WardwellError
from wardwell.models import HistoryEntry, ProjectState
from wardwell.vault import FileKind

if TYPE_CHECKING:
    from wardwell.config import DomainConfig
    from wardwell.sessions import SessionStore
    from wardwell.vault import Vault

logger = logging.getLogger("wardwell.orchestrator")

_BLOCKED = frozenset({"blocked"})
_COMPLETED = frozenset({"completed", "resolved"})
_EXCLUDED = frozenset({"paused", "abandoned", "superseded"})


def _parse_when(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


def bucket_for(status: str) -> str | None:
    """Queue bucket for a snapshot status, or None when the project is left out."""
    if status in _BLOCKED:
        return "blocked"
    if status in _COMPLETED:
        return "completed"
    if status in _EXCLUDED:
        return None
    return "active"


@dataclass
class QueueItem:
    domain: str
    project: str
    status: str
    focus: str
    next_action: str
    updated: str
    last_session: str | None = None

    @property
    def key(self) -> str:
        return f"{self.domain}/{self.project}"

    def to_dict(self) -> dict[str, Any]:
        d = dict(self.__dict__)
        if d["last_session"] is None:
            del d["last_session"]
        return d


@dataclass
class WorkQueue:
    active: list[QueueItem] = field(default_factory=list)
    blocked: list[QueueItem] = field(default_factory=list)
    completed: list[QueueItem] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)   # "domain/project" with no readable snapshot

    @property
    def now(self) -> QueueItem | None:
        return self.active[0] if self.active else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "now": self.now.to_dict() if self.now else None,
            "active": [i.to_dict() for i in self.active],
            "blocked": [i.to_dict() for i in self.blocked],
            "completed": [i.to_dict() for i in self.completed],
            "missing": list(self.missing),
        }


@dataclass
class ContextResult:
    matched: bool
    path: str
    domain: str | None = None
    project: str | None = None
    states: list[ProjectState] = field(default_factory=list)
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched": self.matched,
            "path": self.path,
            "domain": self.domain,
            "project": self.project,
            "states": [s.to_dict() for s in self.states],
            "reason": self.reason,
        }


@dataclass
class HistoryItem:
    domain: str
    project: str
    entry: HistoryEntry

    def to_dict(self) -> dict[str, Any]:
        return {"domain": self.domain, "project": self.project, **self.entry.to_dict()}


class Orchestrator:
    def __init__(
        self,
        vault: Vault,
        domains: dict[str, DomainConfig] | None = None,
        *,
        completed_window_days: int = 14,
        sessions: SessionStore | None = None,
    ) -> None:
        self.vault = vault
        self.domains = dict(domains or {})
        self.completed_window = timedelta(days=completed_window_days)
        self.sessions = sessions

    # ------------------------------------------------------------------
    # Path -> (domain, project)
    # ------------------------------------------------------------------

    def resolve(self, path: str | Path) -> tuple[str | None, str | None]:
        """Map a working directory to a vault (domain, project).

        Tried in order: configured domain path globs (the path or any of its
        ancestors), a path component naming a vault domain or alias, and a
        last component naming an existing project in any domain.
        """
        p = Path(path).expanduser()
        shallowest_first = [*reversed(p.parents), p]
        vault_domains = self.vault.domains()

        for name, dcfg in sorted(self.domains.items()):
            for pattern in dcfg.paths:
                pattern = str(Path(pattern).expanduser())
                for candidate in shallowest_first:
                    if fnmatch(str(candidate), pattern):
                        return name, self._project_in(name, [candidate.name, p.name])
                base = Path(pattern.rstrip("*").rstrip("/") or "/")
                if p == base or base in p.parents:
                    return name, self._project_in(name, [p.name])

        aliases = {name.lower(): name for name in vault_domains}
        for name, dcfg in self.domains.items():
            aliases.setdefault(name.lower(), name)
            for alias in dcfg.aliases:
                aliases.setdefault(alias.lower(), name)
        for part in reversed(p.parts):
            domain = aliases.get(part.lower())
            if domain is not None:
                return domain, self._project_in(domain, [p.name])

        target = p.name.lower()
        if target:
            for domain in vault_domains:
                for project in self.vault.projects(domain):
                    if project.lower() == target:
                        return domain, project
        return None, None

    def _project_in(self, domain: str, names: list[str]) -> str | None:
        projects = {p.lower(): p for p in self.vault.projects(domain)}
        for name in names:
            found = projects.get(name.lower())
            if found is not None:
                return found
        return None

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def _load(self, domain: str, project: str) -> tuple[ProjectState, str] | None:
        """(snapshot, effective updated timestamp), or None if unreadable or absent."""
        path = self.vault.path_for(domain, project, FileKind.STATE)
        try:
            state = self.vault.read_state(domain, project)
            mtime = path.stat().st_mtime if state is not None else 0.0
        except (WardwellError, OSError) as exc:
            logger.warning("unreadable snapshot %s/%s: %s", domain, project, exc)
            return None
        if state is None:
            return None
        when = _parse_when(state.updated) or datetime.fromtimestamp(mtime, UTC)
        return state, when.isoformat(timespec="seconds")

    def _session_activity(self) -> dict[tuple[str, str], str]:
        if self.sessions is None:
            return {}
        latest: dict[tuple[str, str], str] = {}
        for info in self.sessions.list_sessions():
            if info.domain and info.project and info.last_at:
                key = (info.domain, info.project)
                latest[key] = max(latest.get(key, ""), info.last_at)
        return latest

    def prioritized_queue(self, domain: str | None = None) -> WorkQueue:
        queue = WorkQueue()
        now = datetime.now(UTC)
        activity = self._session_activity()
        domains = [domain] if domain else self.vault.domains()

        for d in domains:
            for project in self.vault.projects(d):
                loaded = self._load(d, project)
                if loaded is None:
                    queue.missing.append(f"{d}/{project}")
                    continue
                state, updated = loaded
                if not state.focus and not state.next_action:
                    continue
                bucket = bucket_for(state.status or "active")
                if bucket is None:
                    continue
                if bucket == "completed":
                    when = _parse_when(updated)
                    if when is None or now - when > self.completed_window:
                        continue
                item = QueueItem(
                    domain=d,
                    project=project,
                    status=state.status or "active",
                    focus=state.focus,
                    next_action=state.next_action,
                    updated=updated,
                    last_session=activity.get((d, project)),
                )
                getattr(queue, bucket).append(item)

        for items in (queue.active, queue.blocked, queue.completed):
            items.sort(key=lambda i: (i.domain, i.project))
            items.sort(key=lambda i: _parse_when(i.updated) or datetime.min.replace(tzinfo=UTC), reverse=True)
        return queue

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def context_for(self, path: str | Path) -> ContextResult:
        domain, project = self.resolve(path)
        if domain is None:
            return ContextResult(matched=False, path=str(path), reason=f"no vault domain matches {path}")

        states: list[ProjectState] = []
        if project is not None:
            loaded = self._load(domain, project)
            if loaded is not None:
                states.append(loaded[0])
        for item in self.prioritized_queue(domain).active:
            if item.project != project:
                loaded = self._load(domain, item.project)
                if loaded is not None:
                    states.append(loaded[0])
        reason = "" if states else f"no active projects in {domain}"
        return ContextResult(matched=True, path=str(path), domain=domain, project=project,
                             states=states, reason=reason)

    def render_context(self, result: ContextResult, history: int = 3) -> str:
        """Text block for a session-start hook. Empty string means no match."""
        if not result.matched:
            return ""
        lines = [f"## Wardwell: {result.domain}" + (f"/{result.project}" if result.project else "")]
        if not result.states:
            lines += ["", f"(no active projects in {result.domain})"]
        for state in result.states:
            lines += [
                "",
                f"### {state.domain}/{state.project} [{state.status or 'active'}]"
                + (f" updated {state.updated}" if state.updated else ""),
                f"Focus: {state.focus}",
                f"Next: {state.next_action}",
            ]
            if state.blockers:
                lines.append("Blockers: " + "; ".join(state.blockers))
            recent = self.project_history(state.domain, state.project, limit=history) if history else []
            if recent:
                lines.append("Recent:")
                lines += [f"- {h.entry.date[:10]} {h.entry.title}" for h in recent]
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def project_history(
        self,
        domain: str | None = None,
        project: str | None = None,
        *,
        query: str | None = None,
        since: str | None = None,
        limit: int = 20,
    ) -> list[HistoryItem]:
        """History entries across projects, newest first.

        query is a case-insensitive substring over title, body, focus and commit;
        since is an ISO date or timestamp compared against the entry date.
        """
        if domain and project:
            targets = [(domain, project)]
        elif domain:
            targets = [(domain, p) for p in self.vault.projects(domain)]
        else:
            targets = self.vault.all_projects()

        items: list[HistoryItem] = []
        for d, p in targets:
            for raw in reversed(self.vault.read_history(d, p)):
                entry = raw if isinstance(raw, HistoryEntry) else HistoryEntry.from_dict(raw)
                if query and not entry.matches(query):
                    continue
                if since and entry.date[:len(since)] < since:
                    continue
                items.append(HistoryItem(d, p, entry))
        items.sort(key=lambda h: h.entry.date, reverse=True)
        return items[:limit]
