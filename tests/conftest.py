from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from types import SimpleNamespace

import pytest

from wardwell.config import load_config
from wardwell.gateway import MutationGateway
from wardwell.indexer import VaultIndex
from wardwell.models import ProjectState
from wardwell.vault import Vault


def _fts5_available() -> bool:
    conn = sqlite3.connect(":memory:")
    try:
        conn.execute("CREATE VIRTUAL TABLE t USING fts5(x)")
    except sqlite3.OperationalError:
        return False
    finally:
        conn.close()
    return True


FTS5 = _fts5_available()


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep ~/.wardwell lookups away from the real home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))


@pytest.fixture
def cfg(tmp_path: Path):
    root = tmp_path / "root"
    root.mkdir()
    (root / "wardwell.toml").write_text(
        '[vault]\n'
        'path = "vault"\n'
        '\n'
        '[sessions]\n'
        'sources = ["logs"]\n'
        '\n'
        '[summarizer]\n'
        'min_user_messages = 2\n'
        '\n'
        '[domains.work]\n'
        f'paths = ["{tmp_path}/code/work/*"]\n'
        'aliases = ["job"]\n'
    )
    c = load_config(root)
    c.ensure_dirs()
    return c


@pytest.fixture
def vault(cfg) -> Vault:
    return Vault(cfg.vault.path, exclude=cfg.vault.exclude, extensions=cfg.vault.extensions)


@pytest.fixture
def gateway(cfg, vault) -> MutationGateway:
    return MutationGateway(vault, locks_dir=cfg.locks_dir, lock_timeout=5.0)


@pytest.fixture
def index(cfg, vault):
    if not FTS5:
        pytest.skip("SQLite built without FTS5")
    idx = VaultIndex(vault, cfg.db_path)
    yield idx
    idx.close()


@pytest.fixture
def write(vault):
    """write("work/alpha/notes.md", text) -> absolute path, parents created."""
    def _write(rel: str, text: str) -> Path:
        path = vault.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def make_state():
    def _make(**overrides) -> ProjectState:
        fields = {
            "project": "alpha",
            "domain": "work",
            "status": "active",
            "focus": "ship the importer",
            "next_action": "write the CSV parser",
            "commit_message": "start importer",
        }
        fields.update(overrides)
        return ProjectState(**fields)
    return _make


@pytest.fixture
def session_log(cfg):
    """session_log("-home-me-Code-alpha", "s1", [records]) -> path of the JSONL log."""
    def _log(project_dir: str, session_id: str, records: list[dict], *, append: bool = False) -> Path:
        path = cfg.sessions.sources[0] / project_dir / f"{session_id}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a" if append else "w", encoding="utf-8") as f:
            for rec in records:
                f.write(json.dumps(rec) + "\n")
        return path
    return _log


def user(text: str, ts: str, session_id: str = "s1", **extra) -> dict:
    return {"type": "user", "sessionId": session_id, "timestamp": ts,
            "message": {"role": "user", "content": text}, **extra}


def assistant(text: str, ts: str, session_id: str = "s1") -> dict:
    return {"type": "assistant", "sessionId": session_id, "timestamp": ts,
            "message": {"role": "assistant", "content": [{"type": "text", "text": text}]}}


@pytest.fixture
def msg():
    """Record builders for session logs: msg.user(...), msg.assistant(...)."""
    return SimpleNamespace(user=user, assistant=assistant)
