from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from wardwell.config import DomainConfig
from wardwell.models import HistoryEntry
from wardwell.orchestrator import Orchestrator, bucket_for


def _iso(days_ago: float) -> str:
    return (datetime.now(UTC) - timedelta(days=days_ago)).isoformat(timespec="seconds")


@pytest.fixture
def seed(write, make_state):
    """seed("work", "alpha", days_ago=1, status=...) writes a current_state.md directly."""
    def _seed(domain: str, project: str, days_ago: float = 0, **fields):
        state = make_state(domain=domain, project=project, updated=_iso(days_ago), **fields)
        return write(f"{domain}/{project}/current_state.md", state.to_markdown())
    return _seed


@pytest.fixture
def orch(cfg, vault) -> Orchestrator:
    return Orchestrator(vault, cfg.domains, completed_window_days=14)


def test_bucket_for() -> None:
    assert bucket_for("blocked") == "blocked"
    assert bucket_for("resolved") == "completed"
    assert bucket_for("paused") is None
    assert bucket_for("whatever") == "active"


def test_two_domains_ordered_by_update(orch, seed) -> None:
    seed("work", "alpha", days_ago=2)
    seed("personal", "garden", days_ago=1)
    queue = orch.prioritized_queue()
    assert [i.key for i in queue.active] == ["personal/garden", "work/alpha"]
    assert queue.now.key == "personal/garden"
    assert queue.blocked == queue.completed == queue.missing == []


def test_deleted_snapshot_is_flagged_not_fatal(orch, seed, vault) -> None:
    path = seed("work", "alpha", days_ago=2)
    seed("personal", "garden", days_ago=1)
    path.unlink()
    queue = orch.prioritized_queue()
    assert [i.key for i in queue.active] == ["personal/garden"]
    assert queue.missing == ["work/alpha"]


def test_unreadable_snapshot_is_missing(orch, write) -> None:
    write("work/alpha/current_state.md", "---\nstatus: active\nno closing fence\n")
    assert orch.prioritized_queue().missing == ["work/alpha"]


def test_buckets(orch, seed) -> None:
    seed("work", "a-active", days_ago=3)
    seed("work", "b-blocked", days_ago=1, status="blocked")
    seed("work", "c-done", days_ago=2, status="completed")
    seed("work", "d-old-done", days_ago=30, status="resolved")
    seed("work", "e-paused", status="paused")
    seed("work", "f-seed", focus="", next_action="")
    queue = orch.prioritized_queue("work")
    assert [i.project for i in queue.active] == ["a-active"]
    assert [i.project for i in queue.blocked] == ["b-blocked"]
    assert [i.project for i in queue.completed] == ["c-done"]


def test_ties_ordered_by_key(orch, write, make_state) -> None:
    same = "2026-10-01T09:00:00+00:00"
    for domain, project in [("work", "zeta"), ("personal", "alpha"), ("work", "alpha")]:
        text = make_state(domain=domain, project=project, updated=same).to_markdown()
        write(f"{domain}/{project}/current_state.md", text)
    keys = [i.key for i in orch.prioritized_queue().active]
    assert keys == ["personal/alpha", "work/alpha", "work/zeta"]


def test_mtime_used_when_updated_missing(orch, write) -> None:
    write("work/alpha/current_state.md", "---\nstatus: active\n---\n\n## Focus\nhand written\n\n## Next Action\ntest\n")
    (item,) = orch.prioritized_queue().active
    assert item.focus == "hand written"
    assert item.updated.startswith(datetime.now(UTC).strftime("%Y-%m-%d"))


# ---------------------------------------------------------------------------
# Path resolution and context
# ---------------------------------------------------------------------------

def test_resolve_by_configured_glob(orch, seed, tmp_path) -> None:
    seed("work", "alpha")
    assert orch.resolve(tmp_path / "code" / "work" / "alpha" / "src") == ("work", "alpha")
    assert orch.resolve(tmp_path / "code" / "work" / "unknown") == ("work", None)


def test_resolve_by_domain_name_or_alias(orch, seed) -> None:
    seed("personal", "garden")
    seed("work", "alpha")
    assert orch.resolve("/home/me/personal/garden") == ("personal", "garden")
    assert orch.resolve("/srv/job/alpha") == ("work", "alpha")


def test_resolve_by_project_name(orch, seed) -> None:
    seed("personal", "garden")
    assert orch.resolve("/home/me/src/Garden") == ("personal", "garden")
    assert orch.resolve("/home/me/src/unrelated") == (None, None)


def test_context_for_match(orch, seed, tmp_path) -> None:
    seed("work", "alpha", days_ago=5, focus="alpha focus")
    seed("work", "beta", days_ago=1, focus="beta focus")
    seed("work", "gamma", status="paused")
    seed("personal", "garden")
    ctx = orch.context_for(tmp_path / "code" / "work" / "alpha")
    assert ctx.matched
    assert (ctx.domain, ctx.project) == ("work", "alpha")
    assert [s.project for s in ctx.states] == ["alpha", "beta"]


def test_context_for_no_match(orch, seed) -> None:
    seed("work", "alpha")
    ctx = orch.context_for("/opt/somewhere/else")
    assert not ctx.matched
    assert ctx.states == []
    assert "no vault domain" in ctx.reason
    assert orch.render_context(ctx) == ""


def test_render_context(orch, seed, gateway, tmp_path) -> None:
    seed("work", "alpha", focus="alpha focus", next_action="call the bank", blockers=["api keys"])
    gateway.append_history("work", "alpha", HistoryEntry(title="parser done", date="2026-10-10T10:00:00+00:00"))
    text = orch.render_context(orch.context_for(tmp_path / "code" / "work" / "alpha"))
    assert text.startswith("## Wardwell: work/alpha\n")
    assert "### work/alpha [active]" in text
    assert "Focus: alpha focus" in text
    assert "Next: call the bank" in text
    assert "Blockers: api keys" in text
    assert "- 2026-10-10 parser done" in text


def test_project_history_filters(orch, gateway) -> None:
    for date, title in [("2026-09-01", "kickoff"), ("2026-10-02", "parser done"), ("2026-10-05", "writer done")]:
        gateway.append_history("work", "alpha", HistoryEntry(title=title, date=f"{date}T09:00:00+00:00"))
    gateway.append_history("personal", "garden", HistoryEntry(title="planted basil", date="2026-10-03T09:00:00+00:00"))

    assert [h.entry.title for h in orch.project_history()] == [
        "writer done", "planted basil", "parser done", "kickoff",
    ]
    assert [h.entry.title for h in orch.project_history(query="DONE")] == ["writer done", "parser done"]
    assert [h.entry.title for h in orch.project_history(since="2026-10-03")] == ["writer done", "planted basil"]
    assert [h.entry.title for h in orch.project_history("work", "alpha", limit=1)] == ["writer done"]
    assert orch.project_history("personal")[0].to_dict()["project"] == "garden"


def test_session_activity_signal(cfg, vault, seed) -> None:
    class FakeSessions:
        def list_sessions(self):
            from wardwell.sessions import SessionInfo
            return [SessionInfo("s1", "/x", "/p", "work", "alpha", "2026-10-01", "2026-10-02", 3, 3, "f", 10)]

    seed("work", "alpha")
    orch = Orchestrator(vault, {"work": DomainConfig(name="work")}, sessions=FakeSessions())
    (item,) = orch.prioritized_queue().active
    assert item.last_session == "2026-10-02"
