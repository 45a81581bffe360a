"""Vault indexing and project-state engine: markdown/JSONL files as source of truth, SQLite as derived index.

Layout:
    vault/
        <domain>/
            <project>/
                current_state.md   # snapshot, replaced whole (frontmatter + sections)
                decisions.md       # newest first, entries never rewritten
                history.jsonl      # {"_schema":"history","_version":"1.0"} header, then one entry per line
                lessons.jsonl      # same, schema "lessons"
    .wardwell/
        index.db                   # SQLite FTS5 over vault notes (fully reconstructable)
        sessions.db                # ingested session logs (reconstructable from the logs)
        summaries/                 # diskcache of session summaries
        locks/                     # sidecar flock files

Concurrent writes: every structured write holds a per-file lock (thread lock
plus flock on a sidecar). Snapshots and decisions are replaced atomically
(temp file + rename); history and lessons are single O_APPEND writes.
"""

from wardwell.config import WardwellConfig, init_config, load_config
from wardwell.models import Decision, HistoryEntry, Lesson, ProjectState
from wardwell.server import WardwellServer
from wardwell.vault import Vault

__all__ = [
    "Decision",
    "HistoryEntry",
    "Lesson",
    "ProjectState",
    "Vault",
    "WardwellConfig",
    "WardwellServer",
    "init_config",
    "load_config",
]
