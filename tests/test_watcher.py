from __future__ import annotations

import threading
import time
from pathlib import Path

from wardwell.models import ChangeKind
from wardwell.watcher import diff_snapshots, snapshot, watch_poll


def test_diff_snapshots() -> None:
    a, b, c = Path("/v/a.md"), Path("/v/b.md"), Path("/v/c.md")
    old = {a: (1, 10), b: (1, 10)}
    new = {a: (2, 11), c: (1, 5)}
    events = [(e.kind, e.path) for e in diff_snapshots(old, new)]
    assert events == [
        (ChangeKind.MODIFIED, a),
        (ChangeKind.CREATED, c),
        (ChangeKind.REMOVED, b),
    ]
    assert diff_snapshots(new, new) == []


def test_snapshot_covers_indexable_files_only(vault, write) -> None:
    note = write("work/alpha/INDEX.md", "x")
    write("work/alpha/history.jsonl", "{}\n")
    write(".obsidian/cache.md", "x")
    assert set(snapshot(vault)) == {note}


def test_poll_watcher_reports_changes(vault, write) -> None:
    existing = write("work/alpha/INDEX.md", "x")
    events = []
    stop = threading.Event()
    t = threading.Thread(target=watch_poll, args=(vault, events.append, stop), kwargs={"interval": 0.05})
    t.start()
    try:
        time.sleep(0.2)
        created = write("work/alpha/notes.md", "new")
        existing.unlink()
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and len(events) < 2:
            time.sleep(0.05)
    finally:
        stop.set()
        t.join(5)
    seen = {(e.kind, e.path) for e in events}
    assert (ChangeKind.CREATED, created) in seen
    assert (ChangeKind.REMOVED, existing) in seen


def test_handler_errors_do_not_stop_watching(vault, write) -> None:
    calls = []

    def flaky(event) -> None:
        calls.append(event)
        if len(calls) == 1:
            raise RuntimeError("handler bug")

    stop = threading.Event()
    t = threading.Thread(target=watch_poll, args=(vault, flaky, stop), kwargs={"interval": 0.05})
    t.start()
    try:
        time.sleep(0.2)
        write("work/alpha/one.md", "1")
        time.sleep(0.3)
        write("work/alpha/two.md", "2")
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and len(calls) < 2:
            time.sleep(0.05)
    finally:
        stop.set()
        t.join(5)
    assert len(calls) >= 2
