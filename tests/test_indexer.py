from __future__ import annotations

import os
import shutil
import threading
import time

from wardwell import db
from wardwell.indexer import IndexState, VaultIndex
from wardwell.models import ChangeKind


def _paths(hits) -> list[str]:
    return [h.path for h in hits]


def _seed(write) -> None:
    write("work/alpha/INDEX.md",
          "---\ntype: project\ntags: [importer]\n---\n\n# Alpha importer\n\nParses bank CSV exports.\n")
    write("work/alpha/notes.md", "# Notes\n\nThe parquet writer needs a schema registry.\n")
    write("personal/garden/INDEX.md", "# Garden\n\nTomatoes and basil, drip irrigation.\n")


def test_state_machine(index, write) -> None:
    assert index.state is IndexState.COLD
    _seed(write)
    stats = index.rebuild()
    assert stats.committed
    assert stats.indexed == 3
    assert index.state is IndexState.CONSISTENT


def test_search_basics(index, write) -> None:
    _seed(write)
    index.rebuild()
    (hit,) = [h for h in index.search("irrigation") if h.tier == "primary"]
    assert hit.path == "personal/garden/INDEX.md"
    assert (hit.domain, hit.project, hit.title) == ("personal", "garden", "Garden")
    assert "irrigation" in hit.snippet
    assert _paths(index.search("importer", domain="work"))[0] == "work/alpha/INDEX.md"
    assert all(h.domain == "work" for h in index.search("irrigation", domain="work"))


def test_empty_query_returns_nothing(index, write) -> None:
    _seed(write)
    index.rebuild()
    assert index.search("") == []
    assert index.search("   ") == []
    assert index.search("garden", limit=0) == []


def test_limit(index, write) -> None:
    for i in range(8):
        write(f"work/p{i}/INDEX.md", f"# P{i}\n\nkestrel telemetry {i}\n")
    index.rebuild()
    assert len(index.search("kestrel")) == 5
    assert len(index.search("kestrel", limit=2)) == 2


def test_ties_broken_by_path(index, write) -> None:
    text = "# Notes\n\nkestrel migration plan\n"
    write("work/zeta/notes.md", text)
    write("work/alpha/notes.md", text)
    index.rebuild()
    primary = [h for h in index.search("kestrel") if h.tier == "primary"]
    assert _paths(primary) == ["work/alpha/notes.md", "work/zeta/notes.md"]
    assert primary[0].score == primary[1].score


def test_fuzzy_tier_when_primary_is_sparse(index, write) -> None:
    write("work/k8s/INDEX.md", "# Kubernetes Migration\n\nMove the cluster.\n")
    write("personal/garden/INDEX.md", "# Garden\n\nTomatoes.\n")
    index.rebuild()
    hits = index.search("kubrnetes migrtion")
    assert _paths(hits) == ["work/k8s/INDEX.md"]
    assert hits[0].tier == "fuzzy"


def test_exclusions_never_indexed(index, write) -> None:
    _seed(write)
    write(".obsidian/workspace.md", "irrigation")
    write("work/alpha/node_modules/readme.md", "irrigation")
    write("work/alpha/data.txt", "irrigation")
    index.rebuild()
    assert all(not p.startswith(".obsidian") and "node_modules" not in p for p in index.indexed_paths())
    assert index.handle_change(index.vault.root / ".obsidian" / "workspace.md", ChangeKind.MODIFIED) is False
    assert index.handle_change(index.vault.root / "work" / "alpha" / "data.txt", ChangeKind.MODIFIED) is False


def test_incremental_updates_are_idempotent(index, write) -> None:
    _seed(write)
    index.rebuild()
    path = write("work/alpha/new.md", "# New\n\nosprey\n")
    assert index.handle_change(path, ChangeKind.CREATED) is True
    assert index.handle_change(path, ChangeKind.MODIFIED) is False
    assert index.stats()["entries"] == 4
    assert _paths(index.search("osprey"))[0] == "work/alpha/new.md"

    path.write_text("# New\n\nfalcon\n")
    assert index.handle_change(path, ChangeKind.MODIFIED) is True
    assert [h for h in index.search("osprey") if h.tier == "primary"] == []


def test_removal(index, write) -> None:
    _seed(write)
    index.rebuild()
    path = index.vault.root / "work" / "alpha" / "notes.md"
    path.unlink()
    assert index.handle_change(path, ChangeKind.REMOVED) is True
    assert index.handle_change(path, ChangeKind.REMOVED) is False
    assert "work/alpha/notes.md" not in index.indexed_paths()


def test_directory_removal(index, write) -> None:
    _seed(write)
    index.rebuild()
    shutil.rmtree(index.vault.root / "work")
    assert index.handle_change(index.vault.root / "work", ChangeKind.REMOVED) is True
    assert index.indexed_paths() == ["personal/garden/INDEX.md"]


def test_incremental_matches_rebuild(index, write, cfg, vault) -> None:
    _seed(write)
    index.rebuild()
    changed = write("work/alpha/notes.md", "# Notes\n\nswitched to arrow\n")
    index.handle_change(changed, ChangeKind.MODIFIED)
    added = write("work/beta/INDEX.md", "# Beta\n\narrow flight server\n")
    index.handle_change(added, ChangeKind.CREATED)
    gone = vault.root / "personal" / "garden" / "INDEX.md"
    gone.unlink()
    index.handle_change(gone, ChangeKind.REMOVED)

    fresh = VaultIndex(vault, cfg.index_dir / "fresh.db")
    try:
        fresh.rebuild()
        assert fresh.indexed_paths() == index.indexed_paths()
        assert _paths(fresh.search("arrow")) == _paths(index.search("arrow"))
    finally:
        fresh.close()


def test_deleted_index_goes_cold(index, write, cfg) -> None:
    _seed(write)
    index.rebuild()
    db.remove_db(cfg.db_path)
    assert index.state is IndexState.COLD
    assert index.indexed_paths() == []
    index.rebuild()
    assert index.state is IndexState.CONSISTENT
    assert len(index.indexed_paths()) == 3


def test_cancelled_rebuild_is_discarded(index, write) -> None:
    _seed(write)
    index.rebuild()
    write("work/alpha/late.md", "# Late\n\nheron\n")
    cancel = threading.Event()
    cancel.set()
    stats = index.rebuild(cancel)
    assert not stats.committed
    assert index.state is IndexState.CONSISTENT
    assert "work/alpha/late.md" not in index.indexed_paths()
    assert len(index.indexed_paths()) == 3


def test_changes_during_rebuild_are_replayed(index, write) -> None:
    _seed(write)
    target = index.vault.root / "work" / "alpha" / "notes.md"

    class ChangeMidScan:
        fired = False

        def is_set(self) -> bool:
            if not self.fired:
                self.fired = True
                target.write_text("# Notes\n\npelican\n")
                assert index.handle_change(target, ChangeKind.MODIFIED) is False
                assert index.state is IndexState.REBUILDING
            return False

    stats = index.rebuild(ChangeMidScan())
    assert stats.committed
    assert stats.replayed == 1
    assert index.state is IndexState.CONSISTENT
    assert _paths(index.search("pelican"))[0] == "work/alpha/notes.md"


def test_search_drops_vanished_files(index, write) -> None:
    _seed(write)
    index.rebuild()
    (index.vault.root / "personal" / "garden" / "INDEX.md").unlink()
    assert index.search("irrigation") == []
    assert "personal/garden/INDEX.md" not in index.indexed_paths()


def test_search_refreshes_stale_hits(index, write) -> None:
    _seed(write)
    index.rebuild()
    path = index.vault.root / "personal" / "garden" / "INDEX.md"
    path.write_text("# Garden\n\nIrrigation replaced by rain barrels.\n")
    future = time.time() + 60
    os.utime(path, (future, future))
    index.search("irrigation")
    assert _paths(index.search("barrels"))[0] == "personal/garden/INDEX.md"


def test_suggest(index, write) -> None:
    _seed(write)
    index.rebuild()
    assert index.suggest("Gardn") == ["Garden"]


def test_unreadable_file_is_skipped(index, write) -> None:
    _seed(write)
    loop = index.vault.root / "work" / "alpha" / "loop.md"
    os.symlink("loop.md", loop)
    stats = index.rebuild()
    assert stats.committed
    assert stats.indexed == 3
    assert "work/alpha/loop.md" not in index.indexed_paths()
    assert index.handle_change(loop, ChangeKind.MODIFIED) is False
    assert _paths(index.search("irrigation"))[0] == "personal/garden/INDEX.md"
