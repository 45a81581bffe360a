"""Vault watcher: turns filesystem activity into ChangeEvents.

    watch(vault, emit, stop)    # blocks until stop is set

On IN_CLOSE_WRITE / IN_MOVED_TO for an indexable file:   MODIFIED
On IN_DELETE / IN_MOVED_FROM:                            REMOVED
On a new directory:  watch it, and report files already inside (moved-in trees)

Also diffs an mtime snapshot every `poll_interval` seconds as a safety net
for missed inotify events (watch limits, editors that swap directories).
Delivery is at-least-once; consumers must be idempotent.

Falls back to pure polling if inotify is unavailable (macOS, some containers).
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

from wardwell.models import ChangeEvent, ChangeKind

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable

    from wardwell.vault import Vault

logger = logging.getLogger("wardwell.watcher")

_POLL_INTERVAL = 30.0      # seconds between safety-net snapshot diffs under inotify
_INOTIFY_TIMEOUT_MS = 1000

Snapshot = dict[Path, tuple[int, int]]


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def snapshot(vault: Vault) -> Snapshot:
    """(mtime_ns, size) for every indexable file."""
    out: Snapshot = {}
    for path in vault.walk():
        try:
            st = path.stat()
        except OSError:
            continue
        out[path] = (st.st_mtime_ns, st.st_size)
    return out


def diff_snapshots(old: Snapshot, new: Snapshot) -> list[ChangeEvent]:
    events = []
    for path in sorted(new):
        if path not in old:
            events.append(ChangeEvent(ChangeKind.CREATED, path))
        elif new[path] != old[path]:
            events.append(ChangeEvent(ChangeKind.MODIFIED, path))
    events.extend(ChangeEvent(ChangeKind.REMOVED, path) for path in sorted(old) if path not in new)
    return events


def _emit(emit: Callable[[ChangeEvent], None], event: ChangeEvent) -> None:
    try:
        emit(event)
    except Exception:
        logger.exception("change handler failed: %s %s", event.kind, event.path)


# ---------------------------------------------------------------------------
# inotify watcher
# ---------------------------------------------------------------------------

def watch_inotify(
    vault: Vault,
    emit: Callable[[ChangeEvent], None],
    stop: threading.Event,
    poll_interval: float = _POLL_INTERVAL,
) -> None:
    """Watch using inotify_simple (Linux). Blocks until stop is set."""
    import inotify_simple  # type: ignore[import]

    inotify = inotify_simple.INotify()
    flags = inotify_simple.flags  # type: ignore[attr-defined]
    mask = flags.CREATE | flags.CLOSE_WRITE | flags.MOVED_TO | flags.MOVED_FROM | flags.DELETE

    watched: dict[int, Path] = {}

    def add_tree(top: Path) -> None:
        dirs = [top]
        while dirs:
            d = dirs.pop()
            try:
                wd = inotify.add_watch(str(d), mask)
            except OSError as exc:
                logger.warning("cannot watch %s: %s", d, exc)
                continue
            watched[wd] = d
            try:
                children = sorted(p for p in d.iterdir() if p.is_dir())
            except OSError:
                continue
            for child in children:
                rel = vault.relpath(child)
                if rel is not None and not vault.is_excluded(rel):
                    dirs.append(child)

    vault.root.mkdir(parents=True, exist_ok=True)
    add_tree(vault.root)
    seen = snapshot(vault)
    logger.info("inotify watching %s (%d dirs)", vault.root, len(watched))

    last_poll = time.monotonic()
    try:
        while not stop.is_set():
            for event in inotify.read(timeout=_INOTIFY_TIMEOUT_MS):
                if event.mask & flags.IGNORED:
                    watched.pop(event.wd, None)
                    continue
                dir_path = watched.get(event.wd)
                if dir_path is None or not event.name:
                    continue
                path = dir_path / event.name
                rel = vault.relpath(path)
                if rel is None or vault.is_excluded(rel):
                    continue

                if event.mask & flags.ISDIR:
                    if event.mask & (flags.CREATE | flags.MOVED_TO):
                        add_tree(path)
                        for f in sorted(path.rglob("*")):
                            if vault.is_indexable(f):
                                _emit(emit, ChangeEvent(ChangeKind.CREATED, f))
                    elif event.mask & (flags.DELETE | flags.MOVED_FROM):
                        _emit(emit, ChangeEvent(ChangeKind.REMOVED, path))
                    continue

                if not vault.is_indexable(path):
                    continue
                if event.mask & (flags.DELETE | flags.MOVED_FROM):
                    _emit(emit, ChangeEvent(ChangeKind.REMOVED, path))
                elif event.mask & (flags.CLOSE_WRITE | flags.MOVED_TO):
                    _emit(emit, ChangeEvent(ChangeKind.MODIFIED, path))

            now = time.monotonic()
            if now - last_poll >= poll_interval:
                current = snapshot(vault)
                for ev in diff_snapshots(seen, current):
                    _emit(emit, ev)
                seen = current
                last_poll = now
    finally:
        inotify.close()


# ---------------------------------------------------------------------------
# Polling fallback
# ---------------------------------------------------------------------------

def watch_poll(
    vault: Vault,
    emit: Callable[[ChangeEvent], None],
    stop: threading.Event,
    interval: float = 1.0,
) -> None:
    """Polling fallback for macOS/containers. Diffs (mtime, size) every interval seconds."""
    seen = snapshot(vault)
    logger.info("polling %s interval=%.1fs", vault.root, interval)
    while not stop.wait(interval):
        current = snapshot(vault)
        for ev in diff_snapshots(seen, current):
            _emit(emit, ev)
        seen = current


def watch(
    vault: Vault,
    emit: Callable[[ChangeEvent], None],
    stop: threading.Event,
    *,
    poll_interval: float = _POLL_INTERVAL,
    use_inotify: bool = True,
) -> None:
    if use_inotify:
        try:
            watch_inotify(vault, emit, stop, poll_interval=poll_interval)
            return
        except ImportError:
            logger.warning("inotify_simple not available, falling back to polling")
        except OSError as exc:
            logger.warning("inotify unavailable (%s), falling back to polling", exc)
    watch_poll(vault, emit, stop)
