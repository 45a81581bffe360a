"""Session summaries: a diskcache keyed by session id, invalidated by content fingerprint.

    cache = SummaryCache(cfg.summaries_dir)
    result = cache.get_or_generate(session_id, fingerprint, lambda: summarize(...))

Cache entry (value under key = session id):
    {"fingerprint": "...", "summary": "...", "generated_at": "..."}

A failing generator never touches the stored entry: the caller gets the old
summary marked stale together with the error. Generation runs from the
daemon's periodic cycle (summarize_pending); the query path only peeks.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from diskcache import Cache

from wardwell.errors import ExternalToolError

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable

    from wardwell.config import SummarizerConfig
    from wardwell.sessions import SessionStore

logger = logging.getLogger("wardwell.summarizer")

_MAX_MESSAGE_CHARS = 5_000
_MAX_PAYLOAD_CHARS = 100_000

SUMMARY_PROMPT = """\
You are reading a transcript of a coding-assistant session. Pull out only what
will still matter for this person in other sessions and other projects.

Skip implementation trivia, debugging steps, review nits, one-off fixes and
anything a git log already records.

Report, under these headings, only what the transcript actually shows:

## Decisions
Choices made between real alternatives, with the reason, when the reasoning
carries over to future work.

## Patterns
How this person habitually works: what they reach for first, what they avoid.

## Mental Models
Principles or heuristics they applied or stated, beyond the obvious.

## Context Changes
Project phase shifts, blockers hit or cleared, scope or deadline changes.

Leave a heading out entirely when there is nothing for it. Be brief."""


@dataclass
class SummaryResult:
    summary: str | None
    fingerprint: str | None = None
    generated_at: str | None = None
    cached: bool = False        # served without calling the generator
    stale: bool = False         # fingerprint differs from the requested one
    error: ExternalToolError | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "summary": self.summary,
            "generated_at": self.generated_at,
            "stale": self.stale,
        }
        if self.error is not None:
            d["error"] = str(self.error)
        return d


@dataclass
class SummaryCache:
    """diskcache-backed summary store, opened lazily."""

    cache_dir: Path = field(default_factory=lambda: Path.home() / ".wardwell" / "summaries")
    _disk_cache: Cache | None = field(default=None, repr=False, init=False)

    @property
    def _cache(self) -> Cache:
        if self._disk_cache is None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._disk_cache = Cache(str(self.cache_dir))
        return self._disk_cache

    def close(self) -> None:
        if self._disk_cache is not None:
            self._disk_cache.close()
            self._disk_cache = None

    def peek(self, session_id: str) -> dict[str, Any] | None:
        entry = self._cache.get(session_id)
        return entry if isinstance(entry, dict) else None

    def is_current(self, session_id: str, fingerprint: str) -> bool:
        entry = self.peek(session_id)
        return entry is not None and entry.get("fingerprint") == fingerprint

    def get_or_generate(
        self,
        session_id: str,
        fingerprint: str,
        generator: Callable[[], str],
    ) -> SummaryResult:
        entry = self.peek(session_id)
        if entry is not None and entry.get("fingerprint") == fingerprint:
            return SummaryResult(
                summary=entry.get("summary"),
                fingerprint=fingerprint,
                generated_at=entry.get("generated_at"),
                cached=True,
            )

        try:
            summary = generator()
        except ExternalToolError as exc:
            error = exc
        except (OSError, ValueError) as exc:
            error = ExternalToolError(f"summarizer failed: {exc}")
        else:
            new_entry = {
                "fingerprint": fingerprint,
                "summary": summary,
                "generated_at": datetime.now(UTC).isoformat(timespec="seconds"),
            }
            self._cache.set(session_id, new_entry)
            return SummaryResult(summary=summary, fingerprint=fingerprint,
                                 generated_at=new_entry["generated_at"])

        logger.warning("summary for %s not refreshed: %s", session_id, error)
        if entry is None:
            return SummaryResult(summary=None, error=error)
        return SummaryResult(
            summary=entry.get("summary"),
            fingerprint=entry.get("fingerprint"),
            generated_at=entry.get("generated_at"),
            cached=True,
            stale=True,
            error=error,
        )


# ---------------------------------------------------------------------------
# External generator: `claude -p`
# ---------------------------------------------------------------------------

def build_conversation_payload(messages: list[tuple[str, str]]) -> str:
    """Render (role, text) pairs for the prompt, truncating long messages and the whole."""
    parts: list[str] = []
    total = 0
    for role, text in messages:
        if len(text) > _MAX_MESSAGE_CHARS:
            text = text[:_MAX_MESSAGE_CHARS] + "... [truncated]"
        label = "User" if role == "user" else "Assistant"
        part = f"**{label}:** {text}\n\n"
        if total + len(part) > _MAX_PAYLOAD_CHARS:
            parts.append("[... conversation truncated ...]\n")
            break
        parts.append(part)
        total += len(part)
    return "".join(parts)


@dataclass
class ClaudeSummarizer:
    """Summarize a conversation with the `claude` CLI in print mode."""

    model: str = "haiku"
    command: str = "claude"
    timeout: float = 120.0

    def __call__(self, messages: list[tuple[str, str]], project_path: str = "") -> str:
        prompt = (
            f"{SUMMARY_PROMPT}\n\n---\n\n"
            f"This session was for the project at `{project_path}`.\n\n---\n\n"
            f"{build_conversation_payload(messages)}"
        )
        argv = [self.command, "-p", "--model", self.model, "--output-format", "json", "--no-session-persistence"]
        try:
            proc = subprocess.run(  # noqa: S603
                argv,
                input=prompt,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            msg = f"{self.command} not found on PATH"
            raise ExternalToolError(msg) from exc
        except subprocess.TimeoutExpired as exc:
            msg = f"{self.command} timed out after {self.timeout:.0f}s"
            raise ExternalToolError(msg) from exc

        if proc.returncode != 0:
            msg = f"{self.command} exited with {proc.returncode}: {proc.stderr.strip()[:500]}"
            raise ExternalToolError(msg)
        try:
            parsed = json.loads(proc.stdout)
        except json.JSONDecodeError as exc:
            msg = f"unparseable {self.command} output: {exc}"
            raise ExternalToolError(msg) from exc
        result = parsed.get("result") if isinstance(parsed, dict) else None
        if not isinstance(result, str) or not result.strip():
            msg = f"{self.command} returned no summary"
            raise ExternalToolError(msg)
        return result.strip()


# ---------------------------------------------------------------------------
# Periodic cycle
# ---------------------------------------------------------------------------

@dataclass
class SummaryStats:
    generated: int = 0
    cached: int = 0
    skipped: int = 0
    failed: int = 0


def summarize_pending(
    store: SessionStore,
    cache: SummaryCache,
    generator: Callable[[list[tuple[str, str]], str], str],
    cfg: SummarizerConfig,
    cancel: threading.Event | None = None,
) -> SummaryStats:
    """One refresh pass over ingested sessions. Failures wait for the next pass."""
    stats = SummaryStats()
    for info in store.list_sessions():
        if cancel is not None and cancel.is_set():
            break
        if info.user_messages < cfg.min_user_messages or info.size > cfg.max_session_bytes:
            stats.skipped += 1
            continue
        if cache.is_current(info.session_id, info.fingerprint):
            stats.cached += 1
            continue

        def _generate(sid: str = info.session_id, project_path: str = info.project_path) -> str:
            return generator(store.conversation(sid), project_path)

        result = cache.get_or_generate(info.session_id, info.fingerprint, _generate)
        if result.error is not None:
            stats.failed += 1
        else:
            stats.generated += 1
    if stats.generated or stats.failed:
        logger.info(
            "summaries: %d generated, %d cached, %d skipped, %d failed",
            stats.generated, stats.cached, stats.skipped, stats.failed,
        )
    return stats
