"""Long-running daemon: one per vault.

    python -m wardwell.daemon CONFIG_ROOT

Threads:
    index-worker   drains ChangeEvents (watcher + gateway writes) into the index;
                   rebuilds whenever the index is COLD (first start, index.db deleted)
    watcher        inotify or polling over the vault
    cycle          session ingestion every sessions.interval seconds and
                   summary refresh every summarizer.interval seconds

SIGTERM/SIGINT stop the daemon; SIGHUP reloads wardwell.toml and restarts
the threads with the new config.
"""

from __future__ import annotations

import contextlib
import logging
import queue
import signal
import sqlite3
import sys
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from wardwell.config import load_config
from wardwell.indexer import IndexState
from wardwell.models import ChangeEvent, ChangeKind
from wardwell.server import WardwellServer
from wardwell.summarizer import ClaudeSummarizer, summarize_pending
from wardwell.watcher import watch

if TYPE_CHECKING:
    from collections.abc import Callable

    from wardwell.config import WardwellConfig

logger = logging.getLogger("wardwell.daemon")

_QUEUE_SIZE = 10_000
_WORKER_TIMEOUT = 1.0

# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

# Mutable containers so signal handlers and the main loop can share state without globals.
_reload_state: list[bool] = [False]     # [0] = SIGHUP reload requested
_stop_state: list[bool] = [False]       # [0] = SIGTERM/SIGINT received


def _handle_sighup(signum: int, frame: object) -> None:  # noqa: ARG001
    _reload_state[0] = True
    logger.info("SIGHUP received, config reload requested")


def _handle_stop(signum: int, frame: object) -> None:  # noqa: ARG001
    _stop_state[0] = True
    logger.info("signal %d received, stopping", signum)


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------

class Daemon:
    def __init__(
        self,
        cfg: WardwellConfig,
        *,
        use_inotify: bool = True,
        summarizer: Callable[[list[tuple[str, str]], str], str] | None = None,
    ) -> None:
        self.cfg = cfg
        self.use_inotify = use_inotify
        self._stop = threading.Event()
        self._events: queue.Queue[ChangeEvent | None] = queue.Queue(maxsize=_QUEUE_SIZE)
        self._threads: list[threading.Thread] = []
        self.server = WardwellServer(cfg=cfg, on_write=self._written)
        self.summarizer = summarizer or ClaudeSummarizer(
            model=cfg.summarizer.model,
            command=cfg.summarizer.command,
            timeout=cfg.summarizer.timeout,
        )

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def submit(self, event: ChangeEvent) -> None:
        self._events.put(event)

    def _written(self, path: Path) -> None:
        # Runs inside gateway writes, so it must never wait on the worker.
        # A dropped event is redelivered by the watcher and its mtime poll.
        try:
            self._events.put_nowait(ChangeEvent(ChangeKind.MODIFIED, path))
        except queue.Full:
            logger.warning("index queue full, leaving %s to the watcher", path)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued change has been applied. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._events.unfinished_tasks:
            if deadline is not None and time.monotonic() > deadline:
                return False
            time.sleep(0.01)
        return True

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _index_worker(self) -> None:
        index = self.server.index
        while not self._stop.is_set():
            if index.state is IndexState.COLD:
                logger.info("index is cold, rebuilding from %s", self.server.vault.root)
                try:
                    index.rebuild(self._stop)
                except Exception:
                    logger.exception("rebuild failed")
                    self._stop.wait(_WORKER_TIMEOUT)
            try:
                event = self._events.get(timeout=_WORKER_TIMEOUT)
            except queue.Empty:
                continue
            try:
                if event is None:
                    return
                index.handle_change(event.path, event.kind)
            except Exception:
                logger.exception("index update failed: %s %s", event.kind, event.path)
            finally:
                self._events.task_done()

    def _watch(self) -> None:
        watch(self.server.vault, self.submit, self._stop, use_inotify=self.use_inotify)

    def run_cycle_once(self) -> None:
        """One session ingestion pass followed by one summary refresh pass."""
        self._ingest()
        if self.cfg.summarizer.enabled:
            self._summarize()

    def _ingest(self) -> None:
        self.server.sessions.ingest(self.cfg.sessions.sources, cancel=self._stop)

    def _summarize(self) -> None:
        summarize_pending(
            self.server.sessions, self.server.summaries, self.summarizer, self.cfg.summarizer, cancel=self._stop,
        )

    def _cycle(self) -> None:
        next_ingest = 0.0
        next_summary = time.monotonic() + min(60.0, self.cfg.summarizer.interval)
        while not self._stop.is_set():
            now = time.monotonic()
            try:
                if now >= next_ingest:
                    self._ingest()
                    next_ingest = now + self.cfg.sessions.interval
                if self.cfg.summarizer.enabled and now >= next_summary:
                    self._summarize()
                    next_summary = now + self.cfg.summarizer.interval
            except (OSError, sqlite3.Error):
                logger.exception("session cycle failed, retrying next interval")
                next_ingest = now + self.cfg.sessions.interval
            wake = min(next_ingest, next_summary) if self.cfg.summarizer.enabled else next_ingest
            self._stop.wait(max(0.5, wake - time.monotonic()))

    def start(self) -> None:
        self._stop.clear()
        for name, target in (
            ("index-worker", self._index_worker),
            ("watcher", self._watch),
            ("cycle", self._cycle),
        ):
            t = threading.Thread(target=target, name=f"wardwell-{name}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("daemon started: vault=%s index=%s", self.server.vault.root, self.cfg.db_path)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        with contextlib.suppress(queue.Full):
            self._events.put_nowait(None)
        for t in self._threads:
            t.join(timeout)
            if t.is_alive():
                logger.warning("thread %s did not stop within %.0fs", t.name, timeout)
        self._threads.clear()
        self.server.close()
        logger.info("daemon stopped")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_from_config(config_root: Path | None = None) -> None:
    """Load wardwell.toml and run the daemon until stopped. SIGHUP reloads the config."""
    cfg = load_config(config_root)
    logging.basicConfig(level=cfg.log_level, format="%(asctime)s %(name)s %(message)s")

    signal.signal(signal.SIGTERM, _handle_stop)
    signal.signal(signal.SIGINT, _handle_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _handle_sighup)

    while True:
        _reload_state[0] = False
        logging.getLogger().setLevel(cfg.log_level)
        daemon = Daemon(cfg)
        daemon.start()
        while not (_stop_state[0] or _reload_state[0]):
            time.sleep(0.5)
        daemon.stop()
        if _stop_state[0]:
            break
        logger.info("reloading config from %s", config_root or cfg.root)
        cfg = load_config(config_root)


def main() -> None:
    root = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    run_from_config(root)


if __name__ == "__main__":
    main()
