from __future__ import annotations

from pathlib import Path

import pytest

from wardwell.config import init_config, load_config


def test_defaults_without_config_file(tmp_path: Path) -> None:
    cfg = load_config(tmp_path)
    assert cfg.root == tmp_path
    assert cfg.vault_path == tmp_path / "vault"
    assert cfg.db_path == tmp_path / ".wardwell" / "index.db"
    assert cfg.sessions_db_path == tmp_path / ".wardwell" / "sessions.db"
    assert cfg.search.limit == 5
    assert cfg.search.fallback_threshold == 3
    assert cfg.vault.extensions == [".md"]
    assert ".obsidian" in cfg.vault.exclude
    assert cfg.orchestrator.completed_window_days == 14


def test_values_from_toml(tmp_path: Path) -> None:
    (tmp_path / "wardwell.toml").write_text(
        '[vault]\npath = "notes"\nexclude = ["drafts"]\nauto_create = false\nlock_timeout = 2.5\n'
        '[index]\ndir = "state"\n'
        '[search]\nlimit = 8\nfuzzy_cutoff = 0.7\n'
        '[summarizer]\nenabled = false\nmodel = "sonnet"\n'
        '[domains.work]\npaths = ["~/Code/work/*"]\naliases = ["job"]\n'
        '[log]\nlevel = "debug"\n'
    )
    cfg = load_config(tmp_path)
    assert cfg.vault_path == tmp_path / "notes"
    assert cfg.vault.exclude == ["drafts"]
    assert cfg.vault.auto_create is False
    assert cfg.vault.lock_timeout == 2.5
    assert cfg.index_dir == tmp_path / "state"
    assert cfg.search.limit == 8
    assert cfg.search.fuzzy_cutoff == 0.7
    assert cfg.summarizer.enabled is False
    assert cfg.summarizer.model == "sonnet"
    assert cfg.domains["work"].aliases == ["job"]
    assert cfg.domains["work"].paths == [str(Path.home() / "Code" / "work" / "*")]
    assert cfg.log_level == "DEBUG"


def test_root_found_by_walking_up(tmp_path: Path) -> None:
    (tmp_path / "wardwell.toml").write_text('[vault]\npath = "v"\n')
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    cfg = load_config(nested)
    assert cfg.root == tmp_path
    assert cfg.vault_path == tmp_path / "v"


def test_init_config_refuses_to_overwrite(tmp_path: Path) -> None:
    path = init_config(tmp_path)
    assert path.exists()
    assert load_config(tmp_path).vault_path == tmp_path / "vault"
    with pytest.raises(FileExistsError):
        init_config(tmp_path)


def test_ensure_dirs_marks_index_dir_ignored(tmp_path: Path) -> None:
    cfg = load_config(tmp_path)
    cfg.ensure_dirs()
    assert cfg.vault_path.is_dir()
    assert (cfg.index_dir / ".gitignore").read_text() == "*\n"
