from __future__ import annotations

import json
import subprocess

import pytest

from wardwell.errors import ExternalToolError
from wardwell.sessions import SessionStore
from wardwell.summarizer import ClaudeSummarizer, SummaryCache, build_conversation_payload, summarize_pending


@pytest.fixture
def cache(cfg):
    c = SummaryCache(cfg.summaries_dir)
    yield c
    c.close()


def _failing() -> str:
    raise ExternalToolError("claude exited with 1")


def test_miss_then_hit(cache) -> None:
    calls = []

    def gen() -> str:
        calls.append(1)
        return "## Decisions\nchose sqlite"

    first = cache.get_or_generate("s1", "fp1", gen)
    assert first.summary == "## Decisions\nchose sqlite"
    assert not first.cached
    second = cache.get_or_generate("s1", "fp1", gen)
    assert second.cached and not second.stale
    assert second.summary == first.summary
    assert len(calls) == 1
    assert cache.peek("s1")["fingerprint"] == "fp1"


def test_fingerprint_change_regenerates(cache) -> None:
    cache.get_or_generate("s1", "fp1", lambda: "old")
    result = cache.get_or_generate("s1", "fp2", lambda: "new")
    assert result.summary == "new"
    assert cache.is_current("s1", "fp2")
    assert not cache.is_current("s1", "fp1")


def test_failure_keeps_previous_entry(cache) -> None:
    cache.get_or_generate("s1", "fp1", lambda: "old summary")
    result = cache.get_or_generate("s1", "fp2", _failing)
    assert result.summary == "old summary"
    assert result.stale
    assert isinstance(result.error, ExternalToolError)
    assert cache.peek("s1")["fingerprint"] == "fp1"
    assert result.to_dict()["error"] == "claude exited with 1"


def test_failure_without_previous_entry(cache) -> None:
    result = cache.get_or_generate("s1", "fp1", _failing)
    assert result.summary is None
    assert result.error is not None
    assert cache.peek("s1") is None


def test_cache_survives_reopen(cfg, cache) -> None:
    cache.get_or_generate("s1", "fp1", lambda: "persisted")
    cache.close()
    reopened = SummaryCache(cfg.summaries_dir)
    try:
        assert reopened.peek("s1")["summary"] == "persisted"
    finally:
        reopened.close()


# ---------------------------------------------------------------------------
# Payload and CLI
# ---------------------------------------------------------------------------

def test_payload_format_and_truncation() -> None:
    payload = build_conversation_payload([("user", "Hello"), ("assistant", "Hi there")])
    assert payload == "**User:** Hello\n\n**Assistant:** Hi there\n\n"

    long = build_conversation_payload([("user", "x" * 6000)])
    assert "[truncated]" in long
    assert len(long) < 5100

    capped = build_conversation_payload([("user", "y" * 4000)] * 40)
    assert len(capped) <= 100_100
    assert capped.endswith("[... conversation truncated ...]\n")


def _completed(stdout: str, returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_claude_summarizer_invocation(monkeypatch) -> None:
    seen = {}

    def fake_run(argv, **kwargs):
        seen["argv"] = argv
        seen.update(kwargs)
        return _completed(json.dumps({"type": "result", "result": "  ## Patterns\nsmall commits  "}))

    monkeypatch.setattr(subprocess, "run", fake_run)
    out = ClaudeSummarizer(model="haiku", timeout=30)([("user", "Hello")], "/home/me/Code/alpha")
    assert out == "## Patterns\nsmall commits"
    assert seen["argv"][:4] == ["claude", "-p", "--model", "haiku"]
    assert "--no-session-persistence" in seen["argv"]
    assert seen["timeout"] == 30
    assert "`/home/me/Code/alpha`" in seen["input"]
    assert "**User:** Hello" in seen["input"]


@pytest.mark.parametrize("behaviour", ["exit", "timeout", "missing", "garbage", "empty"])
def test_claude_summarizer_failures(monkeypatch, behaviour) -> None:
    def fake_run(argv, **kwargs):
        if behaviour == "timeout":
            raise subprocess.TimeoutExpired(argv, kwargs["timeout"])
        if behaviour == "missing":
            raise FileNotFoundError(argv[0])
        if behaviour == "exit":
            return _completed("", returncode=1, stderr="rate limited")
        if behaviour == "garbage":
            return _completed("not json")
        return _completed(json.dumps({"result": ""}))

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(ExternalToolError):
        ClaudeSummarizer()([("user", "Hello")], "/tmp")


# ---------------------------------------------------------------------------
# Periodic pass
# ---------------------------------------------------------------------------

def test_summarize_pending(cfg, cache, session_log, msg) -> None:
    session_log("-home-me-Code-alpha", "busy", [
        msg.user("one", "2026-10-01T09:00:00Z", session_id="busy"),
        msg.assistant("ok", "2026-10-01T09:00:01Z", session_id="busy"),
        msg.user("two", "2026-10-01T09:01:00Z", session_id="busy"),
    ])
    session_log("-home-me-Code-alpha", "short", [msg.user("hi", "2026-10-01T09:00:00Z", session_id="short")])
    store = SessionStore(cfg.sessions_db_path)
    try:
        store.ingest(cfg.sessions.sources)
        prompts = []

        def gen(messages, project_path):
            prompts.append((messages, project_path))
            return "summary"

        stats = summarize_pending(store, cache, gen, cfg.summarizer)
        assert (stats.generated, stats.skipped, stats.failed) == (1, 1, 0)
        assert prompts == [([("user", "one"), ("assistant", "ok"), ("user", "two")], "/home/me/Code/alpha")]
        assert cache.peek("busy")["summary"] == "summary"

        again = summarize_pending(store, cache, gen, cfg.summarizer)
        assert (again.generated, again.cached) == (0, 1)

        session_log("-home-me-Code-alpha", "busy", [msg.user("three", "2026-10-01T09:02:00Z", session_id="busy")],
                    append=True)
        store.ingest(cfg.sessions.sources)

        def broken(messages, project_path):
            raise ExternalToolError("down")

        failed = summarize_pending(store, cache, broken, cfg.summarizer)
        assert failed.failed == 1
        assert cache.peek("busy")["summary"] == "summary"
    finally:
        store.close()
