"""WardwellConfig: configuration for the vault daemon.

Default layout (all relative to the config root):

    wardwell.toml         # config
    vault/                # the vault (source of truth, human-editable)
        <domain>/
            <project>/
                INDEX.md
                current_state.md
                decisions.md
                history.jsonl
                lessons.jsonl
    .wardwell/            # derived state, safe to delete
        index.db          # SQLite FTS5 over vault files
        sessions.db       # ingested session logs
        summaries/        # diskcache of session summaries
        locks/            # sidecar flock files for structured writes

wardwell.toml example:

    [vault]
    path = "~/wardwell/vault"
    exclude = [".git", ".obsidian", "node_modules", "*.tmp"]
    # extensions = [".md"]
    # auto_create = true
    # lock_timeout = 5.0

    [index]
    dir = "~/.wardwell"

    [search]
    limit = 5
    fallback_threshold = 3
    fuzzy_cutoff = 0.5

    [sessions]
    sources = ["~/.claude/projects"]
    interval = 300

    [summarizer]
    enabled = true
    model = "haiku"
    interval = 900

    [orchestrator]
    completed_window_days = 14

    [domains.work]
    paths = ["~/Code/work/*"]
    aliases = ["job"]

    [log]
    level = "INFO"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_CONFIG_FILENAME = "wardwell.toml"
_DEFAULT_VAULT_DIR = "vault"
_DEFAULT_INDEX_DIR = ".wardwell"
_GITIGNORE_CONTENT = "*\n"

_DEFAULT_EXCLUDE = [
    ".git", ".obsidian", ".trash", "node_modules", ".wardwell",
    "*.tmp", "*.swp", "*~",
]


@dataclass
class VaultConfig:
    path: Path = field(default_factory=Path)
    exclude: list[str] = field(default_factory=lambda: list(_DEFAULT_EXCLUDE))
    extensions: list[str] = field(default_factory=lambda: [".md"])
    auto_create: bool = True
    lock_timeout: float = 5.0     # seconds before a structured write gives up


@dataclass
class SearchConfig:
    limit: int = 5
    fallback_threshold: int = 3   # primary hits below this trigger the fuzzy tier
    fuzzy_cutoff: float = 0.5


@dataclass
class SessionsConfig:
    sources: list[Path] = field(default_factory=list)
    interval: float = 300.0


@dataclass
class SummarizerConfig:
    enabled: bool = True
    command: str = "claude"
    model: str = "haiku"
    timeout: float = 120.0
    interval: float = 900.0
    min_user_messages: int = 3
    max_session_bytes: int = 1_048_576


@dataclass
class OrchestratorConfig:
    completed_window_days: int = 14


@dataclass
class DomainConfig:
    """A [domains.<name>] entry: working-directory globs that belong to a vault domain."""
    name: str
    paths: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)


@dataclass
class WardwellConfig:
    """Resolved configuration for one vault."""

    root: Path                      # directory that contains wardwell.toml
    vault: VaultConfig = field(default_factory=VaultConfig)
    index_dir: Path = field(default_factory=Path)
    search: SearchConfig = field(default_factory=SearchConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    summarizer: SummarizerConfig = field(default_factory=SummarizerConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    domains: dict[str, DomainConfig] = field(default_factory=dict)
    log_level: str = "INFO"

    @property
    def vault_path(self) -> Path:
        return self.vault.path

    @property
    def db_path(self) -> Path:
        return self.index_dir / "index.db"

    @property
    def sessions_db_path(self) -> Path:
        return self.index_dir / "sessions.db"

    @property
    def summaries_dir(self) -> Path:
        return self.index_dir / "summaries"

    @property
    def locks_dir(self) -> Path:
        return self.index_dir / "locks"

    def ensure_dirs(self) -> None:
        """Create the vault and derived-state directories if they don't exist."""
        self.vault.path.mkdir(parents=True, exist_ok=True)
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self._write_gitignore()

    def _write_gitignore(self) -> None:
        gitignore = self.index_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_GITIGNORE_CONTENT)


def _resolve(root: Path, value: str | Path) -> Path:
    p = Path(value).expanduser()
    return p if p.is_absolute() else root / p


def load_config(root: Path | str | None = None) -> WardwellConfig:
    """Load wardwell.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    vault_section = raw.get("vault", {})
    index_section = raw.get("index", {})
    srch_section = raw.get("search", {})
    sess_section = raw.get("sessions", {})
    summ_section = raw.get("summarizer", {})
    orch_section = raw.get("orchestrator", {})
    log_section = raw.get("log", {})

    sources = sess_section.get("sources", ["~/.claude/projects"])

    domains: dict[str, DomainConfig] = {}
    for name, d in raw.get("domains", {}).items():
        domains[name] = DomainConfig(
            name=name,
            paths=[str(Path(p).expanduser()) for p in d.get("paths", [])],
            aliases=list(d.get("aliases", [])),
        )

    return WardwellConfig(
        root=root_path,
        vault=VaultConfig(
            path=_resolve(root_path, vault_section.get("path", _DEFAULT_VAULT_DIR)),
            exclude=list(vault_section.get("exclude", _DEFAULT_EXCLUDE)),
            extensions=list(vault_section.get("extensions", [".md"])),
            auto_create=bool(vault_section.get("auto_create", True)),
            lock_timeout=float(vault_section.get("lock_timeout", 5.0)),
        ),
        index_dir=_resolve(root_path, index_section.get("dir", _DEFAULT_INDEX_DIR)),
        search=SearchConfig(
            limit=int(srch_section.get("limit", 5)),
            fallback_threshold=int(srch_section.get("fallback_threshold", 3)),
            fuzzy_cutoff=float(srch_section.get("fuzzy_cutoff", 0.5)),
        ),
        sessions=SessionsConfig(
            sources=[_resolve(root_path, s) for s in sources],
            interval=float(sess_section.get("interval", 300.0)),
        ),
        summarizer=SummarizerConfig(
            enabled=bool(summ_section.get("enabled", True)),
            command=summ_section.get("command", "claude"),
            model=summ_section.get("model", "haiku"),
            timeout=float(summ_section.get("timeout", 120.0)),
            interval=float(summ_section.get("interval", 900.0)),
            min_user_messages=int(summ_section.get("min_user_messages", 3)),
            max_session_bytes=int(summ_section.get("max_session_bytes", 1_048_576)),
        ),
        orchestrator=OrchestratorConfig(
            completed_window_days=int(orch_section.get("completed_window_days", 14)),
        ),
        domains=domains,
        log_level=str(log_section.get("level", "INFO")).upper(),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for wardwell.toml, then try ~/.wardwell."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    home = Path.home() / ".wardwell"
    if (home / _CONFIG_FILENAME).exists():
        return home
    return start


def init_config(root: Path, vault_path: str = _DEFAULT_VAULT_DIR) -> Path:
    """Write a default wardwell.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"wardwell.toml already exists at {config_path}"
        raise FileExistsError(msg)

    content = f"""\
[vault]
path = "{vault_path}"
# exclude = [".git", ".obsidian", "node_modules", "*.tmp"]
# extensions = [".md"]
# auto_create = true      # create domain/project dirs on first write
# lock_timeout = 5.0      # seconds

# [index]
# dir = ".wardwell"       # index.db, sessions.db, summaries/ (safe to delete)

# [search]
# limit = 5
# fallback_threshold = 3  # fewer primary hits than this adds fuzzy matches
# fuzzy_cutoff = 0.5

# [sessions]
# sources = ["~/.claude/projects"]
# interval = 300

# [summarizer]
# enabled = true
# model = "haiku"
# interval = 900

# [domains.work]
# paths = ["~/Code/work/*"]
"""
    config_path.write_text(content)
    return config_path
